from storefront.common.logging_setup import get_logger

logger = get_logger("storefront.refunds")

DEFAULT_CANCEL_REASON = "Order cancellation"
DEFAULT_REFUND_REASON = "Customer request"
EXTERNAL_REFUND_REASON = "External refund"

MSG_REFUNDED = "Order cancelled and refund processed successfully. Amount will be credited within 3-5 business days."
MSG_REFUND_PENDING = "Order cancelled. Refund has been initiated and will be processed. Amount will be credited within 3-5 business days."
MSG_REFUND_MANUAL = "Order cancelled. Refund initiation may require manual processing. Please contact support if you need assistance."
MSG_CANCELLED = "Order cancelled successfully."
