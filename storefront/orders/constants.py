from storefront.common.logging_setup import get_logger

logger = get_logger("storefront.orders")

ORDER_NUMBER_PREFIX = "ORD"
