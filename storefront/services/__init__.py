from .inventory_service import InventoryService
from .cart_service import CartService
from .notification_service import NotificationService, NotificationDispatcher, publish_notification
from .paypack_client import AccessTokenCache, PaypackClient
from .payment_service import PaymentService
from .sales_service import SalesService
from .order_lifecycle_service import OrderLifecycleService

__all__ = [
    "InventoryService",
    "CartService",
    "NotificationService",
    "NotificationDispatcher",
    "publish_notification",
    "AccessTokenCache",
    "PaypackClient",
    "PaymentService",
    "SalesService",
    "OrderLifecycleService",
]
