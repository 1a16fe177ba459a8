# storefront/models.py
import json
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
# This ensures all models use the same SQLAlchemy metadata, preventing conflicts.
from storefront.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SaleStatus(str, Enum):
    PENDING = "PENDING"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    DELIVERING = "DELIVERING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUND_REQUESTED = "REFUND_REQUESTED"
    REFUNDED = "REFUNDED"


class SaleType(str, Enum):
    ORDER = "ORDER"
    SALE = "SALE"


class NotificationType(str, Enum):
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"


class Privilege(str, Enum):
    VIEW_SALES = "VIEW_SALES"
    CREATE_SALES = "CREATE_SALES"
    UPDATE_ORDERS = "UPDATE_ORDERS"
    MANAGE_INVENTORY = "MANAGE_INVENTORY"
    ALL = "ALL"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class Role(Base):
    __tablename__ = 'Role'
    roleID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), unique=True, nullable=False)
    _privileges = Column('privileges', String(512), nullable=False, default='')
    users = relationship("User", back_populates="role")

    @property
    def privileges(self) -> Set[str]:
        return {p.strip() for p in (self._privileges or '').split(',') if p.strip()}

    @privileges.setter
    def privileges(self, values) -> None:
        normalized = sorted({Privilege(v).value for v in values or []})
        self._privileges = ','.join(normalized)

    def grants(self, privilege: Privilege | str) -> bool:
        held = self.privileges
        return Privilege.ALL.value in held or Privilege(privilege).value in held


class User(Base):
    __tablename__ = 'User'
    userID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    roleID = Column(Integer, ForeignKey('Role.roleID'))
    _created_at = Column('created_at', DateTime(timezone=True), default=_utcnow)
    role = relationship("Role", back_populates="users")
    cart_items = relationship("CartItem", back_populates="user", cascade="all, delete-orphan")
    notifications = relationship("Notification", back_populates="user", cascade="all, delete-orphan")

    @property
    def created_at(self):
        return self._created_at

    def has_privilege(self, privilege: Privilege | str) -> bool:
        if self.role is None:
            return False
        return self.role.grants(privilege)


class Inventory(Base):
    __tablename__ = 'Inventory'
    inventoryID = Column(Integer, primary_key=True, autoincrement=True)
    variant_reference = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    discounts = relationship(
        "Discount",
        back_populates="inventory",
        order_by="Discount.discountID",
        cascade="all, delete-orphan",
    )
    sale_items = relationship("SaleItem", back_populates="inventory", order_by="SaleItem.saleItemID")


class Discount(Base):
    __tablename__ = 'Discount'
    discountID = Column(Integer, primary_key=True, autoincrement=True)
    inventoryID = Column(Integer, ForeignKey('Inventory.inventoryID'), nullable=False)
    percentage = Column(Numeric(5, 2), nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    start_hour = Column(Integer)
    end_hour = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    inventory = relationship("Inventory", back_populates="discounts")


class Sale(Base):
    __tablename__ = 'Sale'
    saleID = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(32), unique=True, nullable=False)
    _status = Column(
        'status',
        SAEnum(SaleStatus, name="sale_status", native_enum=False, validate_strings=True),
        nullable=False,
        default=SaleStatus.PENDING,
    )
    type = Column(
        SAEnum(SaleType, name="sale_type", native_enum=False, validate_strings=True),
        nullable=False,
        default=SaleType.SALE,
    )
    payment_method = Column(String(50))
    transaction_ref = Column(String(120), unique=True)
    cancel_reason = Column(Text)
    refund_reason = Column(Text)
    refund_response = Column(Text)
    status_before_refund = Column(
        SAEnum(SaleStatus, name="sale_status_before_refund", native_enum=False, validate_strings=True)
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    items = relationship(
        "SaleItem",
        back_populates="sale",
        order_by="SaleItem.saleItemID",
        cascade="all, delete-orphan",
    )
    clients = relationship(
        "SaleClient",
        back_populates="sale",
        order_by="SaleClient.saleClientID",
        cascade="all, delete-orphan",
    )

    @property
    def status(self) -> SaleStatus:
        return SaleStatus(self._status) if self._status is not None else None

    @status.setter
    def status(self, value):
        self._status = SaleStatus(value)

    @property
    def client(self) -> Optional["SaleClient"]:
        # Stored as a collection, read as a single snapshot
        return self.clients[0] if self.clients else None

    @property
    def client_email(self) -> Optional[str]:
        client = self.client
        return client.email if client and client.email else None


class SaleItem(Base):
    __tablename__ = 'SaleItem'
    saleItemID = Column(Integer, primary_key=True, autoincrement=True)
    saleID = Column(Integer, ForeignKey('Sale.saleID'), nullable=False)
    inventoryID = Column(Integer, ForeignKey('Inventory.inventoryID'), nullable=False)
    quantity = Column(Integer, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    sale = relationship("Sale", back_populates="items")
    inventory = relationship("Inventory", back_populates="sale_items")


class SaleClient(Base):
    __tablename__ = 'SaleClient'
    saleClientID = Column(Integer, primary_key=True, autoincrement=True)
    saleID = Column(Integer, ForeignKey('Sale.saleID'), nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    phone = Column(String(50))
    address = Column(String(512))
    city = Column(String(120))
    state = Column(String(120))
    country = Column(String(120))
    payment_info = Column(Text)
    sale = relationship("Sale", back_populates="clients")


class SequenceCounter(Base):
    __tablename__ = 'SequenceCounter'
    name = Column(String(50), primary_key=True)
    value = Column(Integer, nullable=False, default=0)


class CartItem(Base):
    __tablename__ = 'CartItem'
    cartItemID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    inventoryID = Column(Integer, ForeignKey('Inventory.inventoryID'), nullable=False)
    quantity = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    user = relationship("User", back_populates="cart_items")
    inventory = relationship("Inventory")


class Notification(Base):
    __tablename__ = 'Notification'
    notificationID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    html_body = Column(Text)
    type = Column(
        SAEnum(NotificationType, name="notification_type", native_enum=False, validate_strings=True),
        nullable=False,
        default=NotificationType.INFO,
    )
    read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    user = relationship("User", back_populates="notifications")

    def mark_read(self) -> None:
        if not self.read:
            self.read = True
            self.read_at = _utcnow()


# Message Queue Model (Publish-Subscribe): notification events written in the
# same transaction as the state change that produced them
class OutboxMessage(Base):
    __tablename__ = 'OutboxMessage'
    messageID = Column(Integer, primary_key=True, autoincrement=True)
    topic = Column(String(100), nullable=False)
    _payload = Column('payload', Text, nullable=False)
    status = Column(
        SAEnum(OutboxStatus, name="outbox_status", native_enum=False, validate_strings=True),
        nullable=False,
        default=OutboxStatus.PENDING,
    )
    attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(String(512))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    delivered_at = Column(DateTime(timezone=True))

    @property
    def payload(self) -> Dict[str, Any]:
        return json.loads(self._payload) if self._payload else {}

    @payload.setter
    def payload(self, value: Dict[str, Any]) -> None:
        self._payload = json.dumps(value, default=str)

    def mark_delivered(self) -> None:
        self.status = OutboxStatus.DELIVERED
        self.attempts = (self.attempts or 0) + 1
        self.error_message = None
        self.delivered_at = _utcnow()

    def mark_failed(self, reason: str) -> None:
        self.status = OutboxStatus.FAILED
        self.attempts = (self.attempts or 0) + 1
        self.error_message = reason[:512]
