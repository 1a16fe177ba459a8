from .cart import cart_bp
from .inventory import inventory_bp
from .notifications import notifications_bp
from .payments import payments_bp
from .sales import sales_bp

ALL_BLUEPRINTS = (sales_bp, payments_bp, inventory_bp, cart_bp, notifications_bp)

__all__ = [
    "ALL_BLUEPRINTS",
    "cart_bp",
    "inventory_bp",
    "notifications_bp",
    "payments_bp",
    "sales_bp",
]
