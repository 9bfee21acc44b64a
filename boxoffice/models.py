# boxoffice/models.py
from enum import Enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    JSON,
    UniqueConstraint,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Single shared Base so every table lives on the same metadata.
from boxoffice.database import Base, ensure_utc


def _utcnow():
    return datetime.now(timezone.utc)


def _enum(enum_cls, name):
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda members: [member.value for member in members],
    )


class UserRole(str, Enum):
    CUSTOMER = "customer"
    PROMOTER = "promoter"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class BrandingType(str, Enum):
    BASIC = "basic"
    ADVANCED = "advanced"


class GatewayProvider(str, Enum):
    STRIPE = "stripe"
    SQUARE = "square"
    PAYPAL = "paypal"
    BOXOFFICETECH = "boxofficetech"


class GatewayEnvironment(str, Enum):
    SANDBOX = "sandbox"
    LIVE = "live"


class DocumentType(str, Enum):
    TAX = "tax"
    CONTRACT = "contract"
    INSURANCE = "insurance"
    OTHER = "other"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EventStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class HoldStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    CONVERTED = "converted"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

    @classmethod
    def _missing_(cls, value):
        # Older storefront builds wrote "completed" for paid orders.
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "completed":
                return cls.CONFIRMED
            for member in cls:
                if member.value == lowered:
                    return member
        return None


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class TicketStatus(str, Enum):
    VALID = "valid"
    USED = "used"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PromotionType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class SubscriberStatus(str, Enum):
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    BOUNCED = "bounced"
    COMPLAINED = "complained"


class SendStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    BOUNCED = "bounced"
    FAILED = "failed"


class SupportTicketStatus(str, Enum):
    NEW = "new"
    OPEN = "open"
    PENDING = "pending"
    ON_HOLD = "on_hold"
    RESOLVED = "resolved"
    CLOSED = "closed"


class SupportTicketPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class SupportChannel(str, Enum):
    EMAIL = "email"
    WEB = "web"
    PHONE = "phone"
    CHAT = "chat"
    SOCIAL = "social"
    API = "api"


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class DSRType(str, Enum):
    ACCESS = "access"
    RECTIFICATION = "rectification"
    ERASURE = "erasure"
    PORTABILITY = "portability"
    RESTRICTION = "restriction"
    OBJECTION = "objection"
    WITHDRAW_CONSENT = "withdraw_consent"
    DO_NOT_SELL = "do_not_sell"


class DSRStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class GoalStatus(str, Enum):
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BEHIND = "behind"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Accounts & tenants
# ---------------------------------------------------------------------------

class User(Base):
    __tablename__ = 'User'
    userID = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=False)
    _passwordHash = Column('passwordHash', String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    _created_at = Column('created_at', DateTime, default=_utcnow)
    role = Column(String(50), default=UserRole.CUSTOMER.value, nullable=False)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'))
    can_access_all_tenants = Column(Boolean, default=False, nullable=False)

    promoter = relationship("Promoter", back_populates="users")

    @property
    def passwordHash(self):
        return self._passwordHash

    @passwordHash.setter
    def passwordHash(self, value):
        self._passwordHash = value

    @property
    def created_at(self):
        return self._created_at

    @property
    def is_admin(self) -> bool:
        return (self.role or '').lower() in {UserRole.ADMIN.value, UserRole.SUPERADMIN.value}

    @property
    def is_super_admin(self) -> bool:
        return (self.role or '').lower() == UserRole.SUPERADMIN.value or bool(self.can_access_all_tenants)

    @property
    def is_promoter(self) -> bool:
        return (self.role or '').lower() == UserRole.PROMOTER.value

    def to_dict(self):
        return {
            "id": self.userID,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "promoter_id": self.promoterID,
            "can_access_all_tenants": bool(self.can_access_all_tenants),
        }


class Promoter(Base):
    __tablename__ = 'Promoter'
    promoterID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    slug = Column(String(120), unique=True, nullable=False)
    logo_url = Column(String(512))
    website = Column(String(512))
    description = Column(Text)
    branding_type = Column(_enum(BrandingType, "branding_type"), default=BrandingType.BASIC, nullable=False)
    color_scheme = Column(JSON, default=dict)
    commission_rate = Column(Numeric(5, 2), nullable=False, default=10)
    commission_paid = Column(Numeric(12, 2), nullable=False, default=0)
    active = Column(Boolean, default=True, nullable=False)
    is_master = Column(Boolean, default=False, nullable=False)
    custom_domain = Column(String(255), unique=True)
    # Plain ids: themes also point back at promoters.
    custom_theme_id = Column(Integer)
    default_theme_id = Column(Integer)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    users = relationship("User", back_populates="promoter")
    gateway = relationship("PaymentGateway", uselist=False, back_populates="promoter", cascade="all, delete-orphan")
    events = relationship("Event", back_populates="promoter")
    documents = relationship("PromoterDocument", back_populates="promoter", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.promoterID,
            "name": self.name,
            "email": self.email,
            "slug": self.slug,
            "logo": self.logo_url,
            "website": self.website,
            "description": self.description,
            "brandingType": self.branding_type.value if self.branding_type else None,
            "colorScheme": self.color_scheme or {},
            "commission": float(self.commission_rate or 0),
            "active": bool(self.active),
            "customDomain": self.custom_domain,
        }


class PaymentGateway(Base):
    __tablename__ = 'PaymentGateway'
    gatewayID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'), unique=True, nullable=False)
    provider = Column(_enum(GatewayProvider, "gateway_provider"), nullable=False, default=GatewayProvider.STRIPE)
    environment = Column(_enum(GatewayEnvironment, "gateway_environment"), nullable=False, default=GatewayEnvironment.SANDBOX)
    credentials = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    promoter = relationship("Promoter", back_populates="gateway")

    @property
    def secret_key(self):
        return (self.credentials or {}).get("secretKey")

    @property
    def publishable_key(self):
        return (self.credentials or {}).get("publishableKey")

    @property
    def webhook_secret(self):
        return (self.credentials or {}).get("webhookSecret")

    def to_dict(self, reveal: bool = False):
        credentials = dict(self.credentials or {})
        if not reveal:
            credentials = {
                key: (value if key == "publishableKey" or not value else f"****{str(value)[-4:]}")
                for key, value in credentials.items()
            }
        return {
            "id": self.gatewayID,
            "promoterId": self.promoterID,
            "provider": self.provider.value,
            "environment": self.environment.value,
            "credentials": credentials,
            "isActive": bool(self.is_active),
        }


class PromoterDocument(Base):
    __tablename__ = 'PromoterDocument'
    documentID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'), nullable=False)
    document_type = Column(_enum(DocumentType, "document_type"), nullable=False, default=DocumentType.OTHER)
    original_filename = Column(String(255), nullable=False)
    stored_filename = Column(String(255), nullable=False)
    content_type = Column(String(120))
    size_bytes = Column(Integer, default=0)
    status = Column(_enum(DocumentStatus, "document_status"), nullable=False, default=DocumentStatus.PENDING)
    notes = Column(Text)
    uploaded_by = Column(Integer, ForeignKey('User.userID'))
    uploaded_at = Column(DateTime, default=_utcnow)
    reviewed_at = Column(DateTime)

    promoter = relationship("Promoter", back_populates="documents")

    def to_dict(self):
        return {
            "id": self.documentID,
            "promoterId": self.promoterID,
            "type": self.document_type.value,
            "filename": self.original_filename,
            "contentType": self.content_type,
            "size": self.size_bytes,
            "status": self.status.value,
            "notes": self.notes,
            "uploadedAt": _iso(self.uploaded_at),
            "reviewedAt": _iso(self.reviewed_at),
        }


class Theme(Base):
    __tablename__ = 'Theme'
    themeID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'))
    name = Column(String(255), nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    colors = Column(JSON, default=dict)
    typography = Column(JSON, default=dict)
    layout = Column(JSON, default=dict)
    custom_css = Column(Text)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.themeID,
            "promoterId": self.promoterID,
            "name": self.name,
            "isDefault": bool(self.is_default),
            "colors": self.colors or {},
            "typography": self.typography or {},
            "layout": self.layout or {},
            "customCss": self.custom_css,
        }


class AuditLog(Base):
    __tablename__ = 'AuditLog'
    auditID = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer)
    user_id = Column(Integer, ForeignKey('User.userID'))
    action = Column(String(100), nullable=False)
    old_values = Column(JSON)
    new_values = Column(JSON)
    ip_address = Column(String(45))
    timestamp = Column(DateTime, default=_utcnow)
    success = Column(Boolean, default=True)
    error_message = Column(String(255))


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class Venue(Base):
    __tablename__ = 'Venue'
    venueID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'))
    name = Column(String(255), nullable=False)
    address = Column(String(255))
    city = Column(String(120))
    state = Column(String(60))
    zip_code = Column(String(20))
    capacity = Column(Integer, default=0)
    created_at = Column(DateTime, default=_utcnow)

    events = relationship("Event", back_populates="venue")

    def to_dict(self):
        return {
            "id": self.venueID,
            "promoterId": self.promoterID,
            "name": self.name,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "zip": self.zip_code,
            "capacity": self.capacity,
        }


class Event(Base):
    __tablename__ = 'Event'
    eventID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'))
    venueID = Column(Integer, ForeignKey('Venue.venueID'))
    name = Column(String(255), nullable=False)
    description = Column(Text)
    category = Column(String(120))
    image_url = Column(String(512))
    start_at = Column(DateTime, nullable=False)
    door_time = Column(String(5))
    status = Column(_enum(EventStatus, "event_status"), nullable=False, default=EventStatus.DRAFT)
    total_capacity = Column(Integer)
    ticket_price = Column(Numeric(10, 2), nullable=False, default=0)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    promoter = relationship("Promoter", back_populates="events")
    venue = relationship("Venue", back_populates="events")
    holds = relationship("SeatHold", back_populates="event", cascade="all, delete-orphan")

    @property
    def capacity(self) -> int:
        if self.total_capacity is not None:
            return int(self.total_capacity)
        if self.venue is not None and self.venue.capacity:
            return int(self.venue.capacity)
        return 0

    def is_upcoming(self, now=None) -> bool:
        now = now or _utcnow()
        return ensure_utc(self.start_at) > now

    def to_dict(self):
        return {
            "id": self.eventID,
            "promoterId": self.promoterID,
            "venueId": self.venueID,
            "venueName": self.venue.name if self.venue else None,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "image": self.image_url,
            "startAt": _iso(self.start_at),
            "doorTime": self.door_time,
            "status": self.status.value,
            "capacity": self.capacity,
            "price": float(self.ticket_price or 0),
        }


class SeatHold(Base):
    __tablename__ = 'SeatHold'
    holdID = Column(Integer, primary_key=True, autoincrement=True)
    eventID = Column(Integer, ForeignKey('Event.eventID'), nullable=False)
    session_key = Column(String(120), nullable=False)
    quantity = Column(Integer, nullable=False)
    status = Column(_enum(HoldStatus, "hold_status"), nullable=False, default=HoldStatus.ACTIVE)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    event = relationship("Event", back_populates="holds")

    def is_active(self, now=None) -> bool:
        now = now or _utcnow()
        return self.status == HoldStatus.ACTIVE and ensure_utc(self.expires_at) > now


class Customer(Base):
    __tablename__ = 'Customer'
    __table_args__ = (UniqueConstraint('promoterID', 'email', name='uq_customer_promoter_email'),)
    customerID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'))
    email = Column(String(255), nullable=False)
    first_name = Column(String(120))
    last_name = Column(String(120))
    phone = Column(String(40))
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    orders = relationship("Order", back_populates="customer")

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part).strip()

    def to_dict(self):
        return {
            "id": self.customerID,
            "promoterId": self.promoterID,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "phone": self.phone,
            "createdAt": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# Orders, tickets & refunds
# ---------------------------------------------------------------------------

class Order(Base):
    __tablename__ = 'Order'
    orderID = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(64), unique=True, nullable=False)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'))
    eventID = Column(Integer, ForeignKey('Event.eventID'))
    customerID = Column(Integer, ForeignKey('Customer.customerID'))
    userID = Column(Integer, ForeignKey('User.userID'))
    customer_email = Column(String(255))
    customer_name = Column(String(255))
    customer_phone = Column(String(40))
    status = Column(_enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.PENDING)
    payment_status = Column(_enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING)
    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    discount = Column(Numeric(10, 2), nullable=False, default=0)
    service_fee = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="usd")
    refunded_amount = Column(Numeric(10, 2), nullable=False, default=0)
    promo_code = Column(String(64))
    promotionID = Column(Integer, ForeignKey('Promotion.promotionID'))
    payment_intent_id = Column(String(120), unique=True)
    stripe_customer_id = Column(String(120))
    payment_method_type = Column(String(40), default="card")
    card_brand = Column(String(40))
    card_last4 = Column(String(4))
    receipt_url = Column(String(512))
    failure_reason = Column(String(512))
    source = Column(String(40), default="web")
    paid_at = Column(DateTime)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    event = relationship("Event")
    customer = relationship("Customer", back_populates="orders")
    promotion = relationship("Promotion")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    tickets = relationship("Ticket", back_populates="order", cascade="all, delete-orphan", order_by="Ticket.ticketID")
    refunds = relationship("Refund", back_populates="order", cascade="all, delete-orphan")

    _VALID_TRANSITIONS = {
        OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.FAILED, OrderStatus.CANCELLED},
        OrderStatus.FAILED: {OrderStatus.CONFIRMED, OrderStatus.PENDING, OrderStatus.CANCELLED},
        OrderStatus.CONFIRMED: {OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED, OrderStatus.CANCELLED},
        OrderStatus.PARTIALLY_REFUNDED: {OrderStatus.REFUNDED},
    }

    def can_transition(self, new_status: OrderStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(OrderStatus(self.status), set())
        return OrderStatus(new_status) in allowed

    def transition_to(self, new_status: OrderStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid order status transition from {self.status} to {new_status}")
        self.status = OrderStatus(new_status)

    @property
    def ticket_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def refundable_amount(self) -> float:
        return round(float(self.total or 0) - float(self.refunded_amount or 0), 2)

    @property
    def amount_cents(self) -> int:
        return int(round(float(self.total or 0) * 100))


class OrderItem(Base):
    __tablename__ = 'OrderItem'
    orderItemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    eventID = Column(Integer, ForeignKey('Event.eventID'), nullable=False)
    description = Column(String(255))
    section = Column(String(120))
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    event = relationship("Event")

    @property
    def line_total(self) -> float:
        return round(float(self.unit_price) * self.quantity, 2)


class Ticket(Base):
    __tablename__ = 'Ticket'
    ticketID = Column(Integer, primary_key=True, autoincrement=True)
    ticket_code = Column(String(120), unique=True, nullable=False)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    eventID = Column(Integer, ForeignKey('Event.eventID'))
    orderItemID = Column(Integer, ForeignKey('OrderItem.orderItemID'))
    status = Column(_enum(TicketStatus, "ticket_status"), nullable=False, default=TicketStatus.VALID)
    holder_name = Column(String(255))
    section = Column(String(120))
    qr_code = Column(String(255))
    created_at = Column(DateTime, default=_utcnow)
    checked_in_at = Column(DateTime)

    order = relationship("Order", back_populates="tickets")

    def to_dict(self):
        return {
            "ticketId": self.ticket_code,
            "eventId": self.eventID,
            "status": self.status.value,
            "holderName": self.holder_name,
            "section": self.section,
            "qrCode": self.qr_code,
        }


class Refund(Base):
    __tablename__ = 'Refund'
    refundID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(_enum(RefundStatus, "refund_status"), default=RefundStatus.PENDING, nullable=False)
    reason = Column(String(255))
    failure_reason = Column(String(255))
    external_reference = Column(String(120))
    created_at = Column(DateTime, default=_utcnow)
    processed_at = Column(DateTime)

    order = relationship("Order", back_populates="refunds")

    def mark_completed(self, reference: str | None = None) -> None:
        self.status = RefundStatus.COMPLETED
        self.processed_at = _utcnow()
        if reference:
            self.external_reference = reference

    def mark_failed(self, reason: str) -> None:
        self.status = RefundStatus.FAILED
        self.failure_reason = reason
        self.processed_at = _utcnow()

    def to_dict(self):
        return {
            "id": self.refundID,
            "orderId": self.orderID,
            "amount": float(self.amount),
            "status": self.status.value,
            "reason": self.reason,
            "failureReason": self.failure_reason,
            "reference": self.external_reference,
            "processedAt": _iso(self.processed_at),
        }


class Promotion(Base):
    __tablename__ = 'Promotion'
    promotionID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'))
    eventID = Column(Integer, ForeignKey('Event.eventID'))
    code = Column(String(64), nullable=False, index=True)
    promo_type = Column(_enum(PromotionType, "promotion_type"), nullable=False, default=PromotionType.PERCENTAGE)
    value = Column(Numeric(10, 2), nullable=False, default=0)
    description = Column(String(255))
    starts_at = Column(DateTime)
    ends_at = Column(DateTime)
    max_uses = Column(Integer)
    used_count = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.promotionID,
            "promoterId": self.promoterID,
            "eventId": self.eventID,
            "code": self.code,
            "type": self.promo_type.value,
            "value": float(self.value or 0),
            "description": self.description,
            "startsAt": _iso(self.starts_at),
            "endsAt": _iso(self.ends_at),
            "maxUses": self.max_uses,
            "usedCount": self.used_count,
            "active": bool(self.active),
        }


class AffiliateEvent(Base):
    __tablename__ = 'AffiliateEvent'
    __table_args__ = (
        UniqueConstraint('promoterID', 'platform', 'external_event_id', name='uq_affiliate_event_external'),
    )
    affiliateEventID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'), nullable=False)
    platform = Column(String(40), nullable=False)
    external_event_id = Column(String(120), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    image_url = Column(String(512))
    start_at = Column(DateTime)
    venue_name = Column(String(255), default="TBA")
    venue_city = Column(String(120))
    venue_state = Column(String(60))
    venue_country = Column(String(8), default="US")
    min_price = Column(Numeric(10, 2))
    max_price = Column(Numeric(10, 2))
    currency = Column(String(3), default="USD")
    affiliate_url = Column(String(1024))
    clicks = Column(Integer, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.affiliateEventID,
            "platform": self.platform,
            "externalEventId": self.external_event_id,
            "name": self.name,
            "imageUrl": self.image_url,
            "startAt": _iso(self.start_at),
            "venueName": self.venue_name,
            "venueCity": self.venue_city,
            "venueState": self.venue_state,
            "venueCountry": self.venue_country,
            "minPrice": float(self.min_price) if self.min_price is not None else None,
            "maxPrice": float(self.max_price) if self.max_price is not None else None,
            "currency": self.currency,
            "affiliateUrl": self.affiliate_url,
            "isActive": bool(self.is_active),
        }


# ---------------------------------------------------------------------------
# Marketing
# ---------------------------------------------------------------------------

class EmailSubscriber(Base):
    __tablename__ = 'EmailSubscriber'
    __table_args__ = (UniqueConstraint('promoterID', 'email', name='uq_subscriber_promoter_email'),)
    subscriberID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'), nullable=False)
    email = Column(String(255), nullable=False)
    first_name = Column(String(120))
    last_name = Column(String(120))
    status = Column(_enum(SubscriberStatus, "subscriber_status"), nullable=False, default=SubscriberStatus.SUBSCRIBED)
    segments = Column(JSON, default=list)
    tags = Column(JSON, default=list)
    source = Column(String(60), default="manual")
    subscribed_at = Column(DateTime, default=_utcnow)
    unsubscribed_at = Column(DateTime)

    def to_dict(self):
        return {
            "id": self.subscriberID,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "status": self.status.value,
            "segments": list(self.segments or []),
            "tags": list(self.tags or []),
            "source": self.source,
        }


class EmailCampaign(Base):
    __tablename__ = 'EmailCampaign'
    campaignID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'), nullable=False)
    name = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    preheader = Column(String(255))
    from_name = Column(String(120))
    html_content = Column(Text, nullable=False, default="")
    status = Column(_enum(CampaignStatus, "campaign_status"), nullable=False, default=CampaignStatus.DRAFT)
    segment = Column(String(120))
    tags = Column(JSON, default=list)
    scheduled_at = Column(DateTime)
    sent_at = Column(DateTime)
    sent_count = Column(Integer, default=0, nullable=False)
    delivered_count = Column(Integer, default=0, nullable=False)
    opened_count = Column(Integer, default=0, nullable=False)
    clicked_count = Column(Integer, default=0, nullable=False)
    bounced_count = Column(Integer, default=0, nullable=False)
    unsubscribed_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    sends = relationship("EmailSend", back_populates="campaign", cascade="all, delete-orphan")

    _VALID_TRANSITIONS = {
        CampaignStatus.DRAFT: {CampaignStatus.SCHEDULED, CampaignStatus.SENDING, CampaignStatus.CANCELLED},
        CampaignStatus.SCHEDULED: {CampaignStatus.DRAFT, CampaignStatus.SENDING, CampaignStatus.PAUSED, CampaignStatus.CANCELLED},
        CampaignStatus.PAUSED: {CampaignStatus.SCHEDULED, CampaignStatus.SENDING, CampaignStatus.CANCELLED},
        CampaignStatus.SENDING: {CampaignStatus.SENT, CampaignStatus.PAUSED},
    }

    def transition_to(self, new_status: CampaignStatus) -> None:
        allowed = self._VALID_TRANSITIONS.get(CampaignStatus(self.status), set())
        if new_status not in allowed:
            raise ValueError(f"Invalid campaign status transition from {self.status} to {new_status}")
        self.status = new_status

    @property
    def metrics(self):
        return {
            "sent": self.sent_count,
            "delivered": self.delivered_count,
            "opened": self.opened_count,
            "clicked": self.clicked_count,
            "bounced": self.bounced_count,
            "unsubscribed": self.unsubscribed_count,
        }

    def to_dict(self):
        return {
            "id": self.campaignID,
            "promoterId": self.promoterID,
            "name": self.name,
            "subject": self.subject,
            "preheader": self.preheader,
            "fromName": self.from_name,
            "status": self.status.value,
            "segment": self.segment,
            "tags": list(self.tags or []),
            "scheduledAt": _iso(self.scheduled_at),
            "sentAt": _iso(self.sent_at),
            "metrics": self.metrics,
        }


class EmailSend(Base):
    __tablename__ = 'EmailSend'
    sendID = Column(Integer, primary_key=True, autoincrement=True)
    campaignID = Column(Integer, ForeignKey('EmailCampaign.campaignID'), nullable=False)
    subscriberID = Column(Integer, ForeignKey('EmailSubscriber.subscriberID'))
    email = Column(String(255), nullable=False)
    status = Column(_enum(SendStatus, "send_status"), nullable=False, default=SendStatus.QUEUED)
    provider_message_id = Column(String(255))
    error = Column(String(512))
    sent_at = Column(DateTime)
    opened_at = Column(DateTime)
    clicked_at = Column(DateTime)

    campaign = relationship("EmailCampaign", back_populates="sends")
    engagements = relationship("EmailEngagement", back_populates="send", cascade="all, delete-orphan")


class EmailEngagement(Base):
    __tablename__ = 'EmailEngagement'
    engagementID = Column(Integer, primary_key=True, autoincrement=True)
    sendID = Column(Integer, ForeignKey('EmailSend.sendID'), nullable=False)
    event_type = Column(String(20), nullable=False)
    url = Column(String(1024))
    occurred_at = Column(DateTime, default=_utcnow)

    send = relationship("EmailSend", back_populates="engagements")


# ---------------------------------------------------------------------------
# Help desk
# ---------------------------------------------------------------------------

class SLAPolicy(Base):
    __tablename__ = 'SLAPolicy'
    slaPolicyID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'), nullable=False)
    name = Column(String(255), nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    conditions = Column(JSON, default=list)
    first_response_minutes = Column(JSON, default=dict)
    resolution_minutes = Column(JSON, default=dict)
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.slaPolicyID,
            "name": self.name,
            "isDefault": bool(self.is_default),
            "conditions": list(self.conditions or []),
            "firstResponseMinutes": dict(self.first_response_minutes or {}),
            "resolutionMinutes": dict(self.resolution_minutes or {}),
        }


class SupportTicket(Base):
    __tablename__ = 'SupportTicket'
    supportTicketID = Column(Integer, primary_key=True, autoincrement=True)
    number = Column(String(40), unique=True, nullable=False)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'), nullable=False)
    subject = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(_enum(SupportTicketStatus, "support_ticket_status"), nullable=False, default=SupportTicketStatus.NEW)
    priority = Column(_enum(SupportTicketPriority, "support_ticket_priority"), nullable=False, default=SupportTicketPriority.NORMAL)
    channel = Column(_enum(SupportChannel, "support_channel"), nullable=False, default=SupportChannel.WEB)
    category = Column(String(120), default="general")
    customer_email = Column(String(255))
    customer_name = Column(String(255))
    orderID = Column(Integer, ForeignKey('Order.orderID'))
    assignee_id = Column(Integer, ForeignKey('User.userID'))
    assignee_name = Column(String(255))
    slaPolicyID = Column(Integer, ForeignKey('SLAPolicy.slaPolicyID'))
    first_response_due = Column(DateTime)
    first_response_at = Column(DateTime)
    first_response_breached = Column(Boolean, default=False, nullable=False)
    resolution_due = Column(DateTime)
    resolution_breached = Column(Boolean, default=False, nullable=False)
    resolved_at = Column(DateTime)
    closed_at = Column(DateTime)
    satisfaction_rating = Column(Integer)
    satisfaction_comment = Column(Text)
    satisfaction_at = Column(DateTime)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    messages = relationship(
        "TicketMessage",
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="TicketMessage.created_at",
    )
    sla_policy = relationship("SLAPolicy")

    def to_dict(self, include_messages: bool = False):
        payload = {
            "id": self.supportTicketID,
            "number": self.number,
            "promoterId": self.promoterID,
            "subject": self.subject,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "channel": self.channel.value,
            "category": self.category,
            "customer": {"name": self.customer_name, "email": self.customer_email},
            "assignee": {"id": self.assignee_id, "name": self.assignee_name} if self.assignee_id else None,
            "sla": {
                "policyId": self.slaPolicyID,
                "firstResponseDue": _iso(self.first_response_due),
                "firstResponseAt": _iso(self.first_response_at),
                "firstResponseBreached": bool(self.first_response_breached),
                "resolutionDue": _iso(self.resolution_due),
                "resolutionBreached": bool(self.resolution_breached),
            },
            "satisfaction": (
                {"rating": self.satisfaction_rating, "comment": self.satisfaction_comment}
                if self.satisfaction_rating
                else None
            ),
            "resolvedAt": _iso(self.resolved_at),
            "closedAt": _iso(self.closed_at),
            "createdAt": _iso(self.created_at),
        }
        if include_messages:
            payload["messages"] = [message.to_dict() for message in self.messages]
        return payload


class TicketMessage(Base):
    __tablename__ = 'TicketMessage'
    messageID = Column(Integer, primary_key=True, autoincrement=True)
    supportTicketID = Column(Integer, ForeignKey('SupportTicket.supportTicketID'), nullable=False)
    message_type = Column(String(20), nullable=False, default="reply")
    author_type = Column(String(20), nullable=False, default="customer")
    author_id = Column(String(64))
    author_name = Column(String(255))
    content = Column(Text, nullable=False)
    is_public = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    ticket = relationship("SupportTicket", back_populates="messages")

    def to_dict(self):
        return {
            "id": self.messageID,
            "type": self.message_type,
            "authorType": self.author_type,
            "authorId": self.author_id,
            "authorName": self.author_name,
            "content": self.content,
            "isPublic": bool(self.is_public),
            "createdAt": _iso(self.created_at),
        }


class CannedResponse(Base):
    __tablename__ = 'CannedResponse'
    cannedResponseID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'), nullable=False)
    title = Column(String(255), nullable=False)
    category = Column(String(120))
    content = Column(Text, nullable=False)
    usage_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.cannedResponseID,
            "title": self.title,
            "category": self.category,
            "content": self.content,
            "usageCount": self.usage_count,
        }


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------

class Experiment(Base):
    __tablename__ = 'Experiment'
    experimentID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'))
    name = Column(String(255), nullable=False)
    description = Column(Text)
    hypothesis = Column(Text)
    status = Column(_enum(ExperimentStatus, "experiment_status"), nullable=False, default=ExperimentStatus.DRAFT)
    traffic_percentage = Column(Integer, nullable=False, default=100)
    targeting_logic = Column(String(3), nullable=False, default="and")
    targeting_rules = Column(JSON, default=list)
    primary_metric = Column(String(120), default="conversion")
    min_sample_size = Column(Integer, nullable=False, default=100)
    started_at = Column(DateTime)
    ended_at = Column(DateTime)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    variants = relationship(
        "ExperimentVariant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="ExperimentVariant.variantID",
    )

    _VALID_TRANSITIONS = {
        ExperimentStatus.DRAFT: {ExperimentStatus.RUNNING, ExperimentStatus.ARCHIVED},
        ExperimentStatus.RUNNING: {ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED},
        ExperimentStatus.PAUSED: {ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED},
        ExperimentStatus.COMPLETED: {ExperimentStatus.ARCHIVED},
    }

    def transition_to(self, new_status: ExperimentStatus) -> None:
        allowed = self._VALID_TRANSITIONS.get(ExperimentStatus(self.status), set())
        if new_status not in allowed:
            raise ValueError(f"Invalid experiment status transition from {self.status} to {new_status}")
        self.status = new_status

    @property
    def control(self):
        return next((variant for variant in self.variants if variant.is_control), None)

    def to_dict(self):
        return {
            "id": self.experimentID,
            "promoterId": self.promoterID,
            "name": self.name,
            "description": self.description,
            "hypothesis": self.hypothesis,
            "status": self.status.value,
            "trafficPercentage": self.traffic_percentage,
            "targeting": {"logic": self.targeting_logic, "rules": list(self.targeting_rules or [])},
            "minSampleSize": self.min_sample_size,
            "startedAt": _iso(self.started_at),
            "endedAt": _iso(self.ended_at),
            "variants": [variant.to_dict() for variant in self.variants],
        }


class ExperimentVariant(Base):
    __tablename__ = 'ExperimentVariant'
    variantID = Column(Integer, primary_key=True, autoincrement=True)
    experimentID = Column(Integer, ForeignKey('Experiment.experimentID'), nullable=False)
    name = Column(String(120), nullable=False)
    weight = Column(Integer, nullable=False, default=50)
    is_control = Column(Boolean, nullable=False, default=False)
    config = Column(JSON, default=dict)
    visitors = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    revenue = Column(Numeric(12, 2), nullable=False, default=0)

    experiment = relationship("Experiment", back_populates="variants")

    def to_dict(self):
        return {
            "id": self.variantID,
            "name": self.name,
            "weight": self.weight,
            "isControl": bool(self.is_control),
            "config": self.config or {},
            "metrics": {
                "visitors": self.visitors,
                "conversions": self.conversions,
                "revenue": float(self.revenue or 0),
            },
        }


class ExperimentAssignment(Base):
    __tablename__ = 'ExperimentAssignment'
    __table_args__ = (UniqueConstraint('experimentID', 'visitor_id', name='uq_assignment_visitor'),)
    assignmentID = Column(Integer, primary_key=True, autoincrement=True)
    experimentID = Column(Integer, ForeignKey('Experiment.experimentID'), nullable=False)
    variantID = Column(Integer, ForeignKey('ExperimentVariant.variantID'), nullable=False)
    visitor_id = Column(String(120), nullable=False)
    assigned_at = Column(DateTime, default=_utcnow)
    converted = Column(Boolean, nullable=False, default=False)
    converted_at = Column(DateTime)
    revenue = Column(Numeric(12, 2), nullable=False, default=0)

    variant = relationship("ExperimentVariant")


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------

class DataSubjectRequest(Base):
    __tablename__ = 'DataSubjectRequest'
    dsrID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'))
    customerID = Column(Integer)
    request_type = Column(_enum(DSRType, "dsr_type"), nullable=False)
    status = Column(_enum(DSRStatus, "dsr_status"), nullable=False, default=DSRStatus.PENDING)
    verification_status = Column(_enum(VerificationStatus, "dsr_verification_status"), nullable=False, default=VerificationStatus.PENDING)
    verification_method = Column(String(40))
    requester_email = Column(String(255), nullable=False)
    requester_name = Column(String(255))
    details = Column(Text)
    deadline_at = Column(DateTime, nullable=False)
    response = Column(JSON)
    rejection_reason = Column(String(512))
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    _VALID_TRANSITIONS = {
        DSRStatus.PENDING: {DSRStatus.IN_PROGRESS, DSRStatus.REJECTED, DSRStatus.CANCELLED, DSRStatus.COMPLETED},
        DSRStatus.IN_PROGRESS: {DSRStatus.COMPLETED, DSRStatus.REJECTED, DSRStatus.CANCELLED},
    }

    def transition_to(self, new_status: DSRStatus) -> None:
        allowed = self._VALID_TRANSITIONS.get(DSRStatus(self.status), set())
        if new_status not in allowed:
            raise ValueError(f"Invalid DSR status transition from {self.status} to {new_status}")
        self.status = new_status

    def is_overdue(self, now=None) -> bool:
        now = now or _utcnow()
        open_statuses = {DSRStatus.PENDING, DSRStatus.IN_PROGRESS}
        return DSRStatus(self.status) in open_statuses and ensure_utc(self.deadline_at) < now

    def to_dict(self):
        return {
            "id": self.dsrID,
            "promoterId": self.promoterID,
            "customerId": self.customerID,
            "type": self.request_type.value,
            "status": self.status.value,
            "verificationStatus": self.verification_status.value,
            "verificationMethod": self.verification_method,
            "requesterEmail": self.requester_email,
            "requesterName": self.requester_name,
            "details": self.details,
            "deadline": _iso(self.deadline_at),
            "response": self.response,
            "rejectionReason": self.rejection_reason,
            "completedAt": _iso(self.completed_at),
            "createdAt": _iso(self.created_at),
        }


class ConsentRecord(Base):
    __tablename__ = 'ConsentRecord'
    consentID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'))
    customerID = Column(Integer)
    email = Column(String(255), nullable=False)
    consent_type = Column(String(60), nullable=False)
    granted = Column(Boolean, nullable=False, default=True)
    source = Column(String(60), default="web")
    ip_address = Column(String(45))
    recorded_at = Column(DateTime, default=_utcnow)
    withdrawn_at = Column(DateTime)

    def to_dict(self):
        return {
            "id": self.consentID,
            "email": self.email,
            "type": self.consent_type,
            "granted": bool(self.granted),
            "source": self.source,
            "recordedAt": _iso(self.recorded_at),
            "withdrawnAt": _iso(self.withdrawn_at),
        }


# ---------------------------------------------------------------------------
# Promoter dashboard
# ---------------------------------------------------------------------------

class AlertRule(Base):
    __tablename__ = 'AlertRule'
    alertRuleID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'), nullable=False)
    name = Column(String(255), nullable=False)
    metric = Column(String(120), nullable=False)
    operator = Column(String(20), nullable=False)
    threshold = Column(Numeric(14, 2), nullable=False)
    severity = Column(String(20), nullable=False, default="warning")
    enabled = Column(Boolean, nullable=False, default=True)
    trigger_count = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(DateTime)
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.alertRuleID,
            "name": self.name,
            "metric": self.metric,
            "condition": {"operator": self.operator, "threshold": float(self.threshold)},
            "severity": self.severity,
            "enabled": bool(self.enabled),
            "triggerCount": self.trigger_count,
            "lastTriggered": _iso(self.last_triggered_at),
        }


class DashboardAlert(Base):
    __tablename__ = 'DashboardAlert'
    alertID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'), nullable=False)
    alertRuleID = Column(Integer, ForeignKey('AlertRule.alertRuleID'))
    rule_name = Column(String(255))
    metric = Column(String(120))
    value = Column(Numeric(14, 2))
    threshold = Column(Numeric(14, 2))
    message = Column(String(512))
    severity = Column(String(20))
    status = Column(_enum(AlertStatus, "alert_status"), nullable=False, default=AlertStatus.ACTIVE)
    acknowledged_by = Column(Integer, ForeignKey('User.userID'))
    acknowledged_at = Column(DateTime)
    resolved_at = Column(DateTime)
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.alertID,
            "ruleId": self.alertRuleID,
            "ruleName": self.rule_name,
            "metric": self.metric,
            "value": float(self.value) if self.value is not None else None,
            "threshold": float(self.threshold) if self.threshold is not None else None,
            "message": self.message,
            "severity": self.severity,
            "status": self.status.value,
            "acknowledgedAt": _iso(self.acknowledged_at),
            "resolvedAt": _iso(self.resolved_at),
            "createdAt": _iso(self.created_at),
        }


class PromoterGoal(Base):
    __tablename__ = 'PromoterGoal'
    goalID = Column(Integer, primary_key=True, autoincrement=True)
    promoterID = Column(Integer, ForeignKey('Promoter.promoterID'), nullable=False)
    name = Column(String(255), nullable=False)
    goal_type = Column(String(40), nullable=False, default="custom")
    metric = Column(String(120), nullable=False)
    target = Column(Numeric(14, 2), nullable=False)
    current = Column(Numeric(14, 2), nullable=False, default=0)
    unit = Column(String(20))
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    milestones = Column(JSON, default=list)
    status = Column(_enum(GoalStatus, "goal_status"), nullable=False, default=GoalStatus.ON_TRACK)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.goalID,
            "name": self.name,
            "type": self.goal_type,
            "metric": self.metric,
            "target": float(self.target),
            "current": float(self.current or 0),
            "unit": self.unit,
            "period": {"start": _iso(self.period_start), "end": _iso(self.period_end)},
            "milestones": list(self.milestones or []),
            "status": self.status.value,
        }


def _iso(value):
    if value is None:
        return None
    return ensure_utc(value).isoformat()
