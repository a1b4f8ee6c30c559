from storefront.common.logging_setup import get_logger

logger = get_logger("storefront.admin")

MAX_PAGE_SIZE = 200

ANALYTICS_MONTHS = 6
TOP_PRODUCTS_LIMIT = 7
