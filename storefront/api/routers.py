from fastapi import APIRouter
from storefront.api import version_prefix
from storefront.admin.routes import admin_analytics_router, admin_orders_router
from storefront.common.routes import home_router
from storefront.orders.routes import orders_router
from storefront.orders.webhooks import webhooks_router


public_routers = APIRouter(prefix=version_prefix)

public_routers.include_router(orders_router, tags=["orders"])
public_routers.include_router(webhooks_router, tags=["webhooks"])
public_routers.include_router(home_router, tags=["home"])

#--------------------------------------------------------------------------------------------------------

admin_routers = APIRouter(prefix=f"{version_prefix}/admin")

admin_routers.include_router(admin_orders_router, prefix="/orders", tags=["orders-admin"])
admin_routers.include_router(admin_analytics_router, prefix="/analytics", tags=["analytics-admin"])
