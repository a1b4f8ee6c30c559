from storefront.common.logging_setup import get_logger

logger = get_logger("storefront.payments")

TEST_KEY_PREFIX = "rzp_test_"

# gateway payment states that mean money actually moved to the merchant
CAPTURED_STATES = ("captured",)

INSTANT_REFUND_SPEED = "optimum"
