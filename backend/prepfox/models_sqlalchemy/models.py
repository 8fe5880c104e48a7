from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Text,
    ForeignKey,
    Boolean,
    Index,
    Numeric,
    UniqueConstraint,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum
import json
import uuid

from . import Base


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    user = "user"
    admin = "admin"
    master_admin = "master_admin"


class CarrierName(str, enum.Enum):
    ups = "ups"
    canada_post = "canada_post"
    shipstation = "shipstation"


class SubmissionStatus(str, enum.Enum):
    draft = "draft"
    payment_pending = "payment_pending"
    pending_approval = "pending_approval"
    approved = "approved"
    received = "received"


class SubmissionPaymentStatus(str, enum.Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"


class ShippingLabelStatus(str, enum.Enum):
    created = "created"
    voided = "voided"


class SyncStatus(str, enum.Enum):
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


class _EncryptedTokensMixin:
    """Property accessors that keep OAuth tokens encrypted at rest."""

    @property
    def access_token(self) -> str | None:
        from prepfox.utils import crypto

        raw = self._access_token
        if raw is None:
            return None
        return crypto.decrypt(raw)

    @access_token.setter
    def access_token(self, value: str | None) -> None:
        from prepfox.utils import crypto

        if value is None or value == "":
            self._access_token = None
        else:
            self._access_token = crypto.encrypt(value)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    username = Column(String(100), nullable=True)
    hashed_password = Column(String(255), nullable=False)
    role = Column(String(32), nullable=False, default=UserRole.user.value)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    carrier_configurations = relationship("CarrierConfiguration", back_populates="user")


class CarrierConfiguration(_EncryptedTokensMixin, Base):
    """A user's (or PrepFox's) account with a shipping carrier.

    ``api_credentials`` is a JSON object (client_id/client_secret for UPS,
    username/password/customer_number for Canada Post, api_key/api_secret for
    ShipStation) stored as a single encrypted blob.
    """

    __tablename__ = "carrier_configurations"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    carrier_name = Column(String(32), nullable=False)
    display_name = Column(String(100), nullable=True)
    _api_credentials = Column("api_credentials", Text, nullable=True)
    account_number = Column(String(64), nullable=True)
    country = Column(String(2), nullable=True)
    _access_token = Column("access_token", Text, nullable=True)
    _refresh_token = Column("refresh_token", Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    markup_percent = Column(Float, nullable=False, default=0.0)
    negotiated_rates = Column(Boolean, nullable=False, default=False)
    test_mode = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="carrier_configurations")
    services = relationship(
        "ShippingService",
        back_populates="configuration",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_carrier_configurations_user_id", "user_id"),
        Index("idx_carrier_configurations_carrier", "carrier_name", "is_active"),
    )

    @property
    def api_credentials(self) -> dict:
        from prepfox.utils import crypto

        raw = self._api_credentials
        if not raw:
            return {}
        try:
            return json.loads(crypto.decrypt(raw) or "{}")
        except ValueError:
            return {}

    @api_credentials.setter
    def api_credentials(self, value: dict | None) -> None:
        from prepfox.utils import crypto

        if not value:
            self._api_credentials = None
        else:
            self._api_credentials = crypto.encrypt(json.dumps(value))

    @property
    def refresh_token(self) -> str | None:
        from prepfox.utils import crypto

        raw = self._refresh_token
        if raw is None:
            return None
        return crypto.decrypt(raw)

    @refresh_token.setter
    def refresh_token(self, value: str | None) -> None:
        from prepfox.utils import crypto

        if value is None or value == "":
            self._refresh_token = None
        else:
            self._refresh_token = crypto.encrypt(value)


class ShippingService(Base):
    __tablename__ = "shipping_services"

    id = Column(String(36), primary_key=True, default=_uuid)
    carrier_configuration_id = Column(
        String(36), ForeignKey("carrier_configurations.id", ondelete="CASCADE"), nullable=False
    )
    service_code = Column(String(32), nullable=False)
    service_name = Column(String(100), nullable=False)
    service_type = Column(String(32), nullable=False, default="standard")
    is_enabled = Column(Boolean, nullable=False, default=True)

    configuration = relationship("CarrierConfiguration", back_populates="services")

    __table_args__ = (
        UniqueConstraint("carrier_configuration_id", "service_code", name="uq_shipping_services_config_code"),
    )


class CarrierTokenRefreshLog(Base):
    __tablename__ = "carrier_token_refresh_log"

    id = Column(String(36), primary_key=True, default=_uuid)
    carrier_configuration_id = Column(
        String(36), ForeignKey("carrier_configurations.id", ondelete="CASCADE"), nullable=False
    )
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    success = Column(Boolean, nullable=True)
    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    old_expires_at = Column(DateTime(timezone=True), nullable=True)
    new_expires_at = Column(DateTime(timezone=True), nullable=True)
    triggered_by = Column(String(32), nullable=False, default="scheduled")

    __table_args__ = (
        Index("idx_carrier_token_refresh_log_config", "carrier_configuration_id", "started_at"),
    )


class StoreConfiguration(_EncryptedTokensMixin, Base):
    __tablename__ = "store_configurations"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    platform = Column(String(32), nullable=False, default="shopify")
    store_name = Column(String(255), nullable=True)
    store_domain = Column(String(255), nullable=False)
    _access_token = Column("access_token", Text, nullable=True)
    ship_from_address = Column(JSONType, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "platform", "store_domain", name="uq_store_configurations_user_store"),
    )


class ShopifySyncStatus(Base):
    __tablename__ = "shopify_sync_status"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    store_configuration_id = Column(String(36), ForeignKey("store_configurations.id", ondelete="CASCADE"), nullable=True)
    sync_type = Column(String(32), nullable=False, default="products")
    status = Column(String(32), nullable=False, default=SyncStatus.in_progress.value)
    items_synced = Column(Integer, nullable=False, default=0)
    last_page_info = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "sync_type", name="uq_shopify_sync_status_user_type"),
    )


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    shopify_product_id = Column(String(64), nullable=True)
    handle = Column(String(255), nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    product_type = Column(String(255), nullable=True)
    vendor = Column(String(255), nullable=True)
    tags = Column(Text, nullable=True)
    category = Column(String(255), nullable=True)
    seo_title = Column(Text, nullable=True)
    seo_description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=True)
    compare_at_price = Column(Numeric(12, 2), nullable=True)
    sku = Column(String(100), nullable=True)
    weight = Column(Float, nullable=True)
    weight_unit = Column(String(8), nullable=True)
    inventory_quantity = Column(Integer, nullable=True)
    image_url = Column(Text, nullable=True)
    status = Column(String(32), nullable=True)
    ai_optimized_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "handle", name="uq_products_user_handle"),
    )


class ProductEditHistory(Base):
    __tablename__ = "product_edit_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    field_name = Column(String(64), nullable=False)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    edit_source = Column(String(16), nullable=False, default="manual")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_product_edit_history_product", "product_id", "created_at"),
    )


class UserEditPattern(Base):
    """A learned preference distilled from a user's manual product edits."""

    __tablename__ = "user_edit_patterns"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    field_name = Column(String(64), nullable=False)
    pattern_description = Column(Text, nullable=False)
    confidence = Column(Float, nullable=False, default=0.0)
    is_approved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    store_configuration_id = Column(String(36), ForeignKey("store_configurations.id", ondelete="SET NULL"), nullable=True)
    external_order_id = Column(String(64), nullable=False)
    order_number = Column(String(64), nullable=True)
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    shipping_address = Column(JSONType, nullable=True)
    total_price = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    financial_status = Column(String(32), nullable=True)
    fulfillment_status = Column(String(32), nullable=True)
    package_weight = Column(Float, nullable=True)
    package_length = Column(Float, nullable=True)
    package_width = Column(Float, nullable=True)
    package_height = Column(Float, nullable=True)
    package_value = Column(Float, nullable=True)
    carrier = Column(String(64), nullable=True)
    tracking_number = Column(String(64), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("user_id", "external_order_id", name="uq_orders_user_external"),
        Index("idx_orders_order_number", "order_number"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    external_line_item_id = Column(String(64), nullable=True)
    sku = Column(String(100), nullable=True)
    title = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(12, 2), nullable=True)

    order = relationship("Order", back_populates="items")


class ShippingLabel(Base):
    __tablename__ = "shipping_labels"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    carrier_configuration_id = Column(
        String(36), ForeignKey("carrier_configurations.id", ondelete="SET NULL"), nullable=True
    )
    carrier = Column(String(32), nullable=False)
    service_code = Column(String(32), nullable=True)
    service_name = Column(String(100), nullable=True)
    tracking_number = Column(String(64), nullable=True)
    label_data = Column(Text, nullable=True)
    label_format = Column(String(8), nullable=True)
    cost = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    status = Column(String(16), nullable=False, default=ShippingLabelStatus.created.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    voided_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_shipping_labels_user", "user_id", "created_at"),
        Index("idx_shipping_labels_tracking", "tracking_number"),
    )


class Plan(Base):
    __tablename__ = "plans"

    id = Column(String(36), primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    monthly_price = Column(Numeric(10, 2), nullable=False, default=0)
    features = Column(JSONType, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class BillingCustomer(Base):
    __tablename__ = "billing_customers"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    stripe_customer_id = Column(String(64), nullable=False, unique=True)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    plan_id = Column(String(36), nullable=True)
    stripe_subscription_id = Column(String(64), nullable=False, unique=True)
    stripe_customer_id = Column(String(64), nullable=True)
    status = Column(String(32), nullable=False)
    billing_cycle = Column(String(16), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    entitlements = relationship(
        "SubscriptionEntitlement",
        back_populates="subscription",
        cascade="all, delete-orphan",
    )


class SubscriptionEntitlement(Base):
    __tablename__ = "subscription_entitlements"

    id = Column(String(36), primary_key=True, default=_uuid)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    feature = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    subscription = relationship("Subscription", back_populates="entitlements")


class InventorySubmission(Base):
    __tablename__ = "inventory_submissions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    submission_number = Column(String(64), nullable=True)
    status = Column(String(32), nullable=False, default=SubmissionStatus.draft.value)
    payment_status = Column(String(32), nullable=True)
    total_items = Column(Integer, nullable=False, default=0)
    total_prep_cost = Column(Numeric(12, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    items = relationship("SubmissionItem", back_populates="submission", cascade="all, delete-orphan")


class SubmissionItem(Base):
    __tablename__ = "submission_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    submission_id = Column(String(36), ForeignKey("inventory_submissions.id", ondelete="CASCADE"), nullable=False)
    sku = Column(String(100), nullable=True)
    product_name = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    prep_cost_per_unit = Column(Numeric(10, 2), nullable=True)

    submission = relationship("InventorySubmission", back_populates="items")


class SubmissionPayment(Base):
    __tablename__ = "submission_payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    submission_id = Column(String(36), ForeignKey("inventory_submissions.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    stripe_session_id = Column(String(255), nullable=False, unique=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(16), nullable=False, default=SubmissionPaymentStatus.pending.value)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SubmissionInvoice(Base):
    __tablename__ = "submission_invoices"

    id = Column(String(36), primary_key=True, default=_uuid)
    submission_id = Column(String(36), ForeignKey("inventory_submissions.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    payment_id = Column(String(36), ForeignKey("submission_payments.id", ondelete="SET NULL"), nullable=True)
    invoice_number = Column(String(64), nullable=False, unique=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(16), nullable=False, default="paid")
    issued_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=True)
    event_type = Column(String(64), nullable=False)
    event_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_audit_logs_event_type", "event_type", "created_at"),
    )
