from storefront.common.logging_setup import get_logger

logger = get_logger("storefront.auth")

# role stored on profiles for accounts that never had one assigned
DEFAULT_ROLE = "customer"
