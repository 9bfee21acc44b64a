# tests/conftest.py
"""
Pytest configuration and shared fixtures.

The engine in ``boxoffice.database`` is built from the environment at import
time, so the test database location is set before anything from the package
is imported.
"""

import os
import tempfile
from datetime import timedelta
from uuid import uuid4

_TEST_DIR = tempfile.mkdtemp(prefix="boxoffice-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["DOCUMENT_UPLOAD_DIR"] = os.path.join(_TEST_DIR, "documents")
os.environ["SUPER_ADMIN_TOKEN"] = "test-superadmin-token"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["EMAIL_API_KEY"] = ""
os.environ["FLASK_TESTING"] = "1"
os.environ["STRUCTURED_LOGS_ENABLED"] = "0"

import pytest

from boxoffice.database import Base, SessionLocal, engine, utcnow
from boxoffice.models import (
    Event,
    EventStatus,
    GatewayProvider,
    Order,
    OrderItem,
    OrderStatus,
    PaymentGateway,
    PaymentStatus,
    Promoter,
    User,
    UserRole,
    Venue,
)
from boxoffice.services.branding_service import clear_theme_cache
from boxoffice.services.notification_service import NotificationService


@pytest.fixture(autouse=True)
def fresh_schema():
    """Every test starts on empty tables and empty in-process caches."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    clear_theme_cache()
    NotificationService().clear_notifications()
    yield


@pytest.fixture
def db_session():
    """Create a fresh database session for each test"""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def create_promoter(db_session, *, slug=None, with_gateway=True, **fields):
    slug = slug or f"promoter-{uuid4().hex[:8]}"
    fields.setdefault("active", True)
    promoter = Promoter(name=fields.pop("name", slug.replace("-", " ").title()), slug=slug, **fields)
    db_session.add(promoter)
    db_session.flush()
    if with_gateway:
        db_session.add(
            PaymentGateway(
                promoterID=promoter.promoterID,
                provider=GatewayProvider.STRIPE,
                credentials={"secretKey": "sk_test_123", "publishableKey": "pk_test_123"},
                is_active=True,
            )
        )
    db_session.commit()
    return promoter


def create_event(db_session, promoter, *, price=50.00, capacity=100, days_ahead=30,
                 status=EventStatus.PUBLISHED, **fields):
    venue = Venue(promoterID=promoter.promoterID, name=fields.pop("venue_name", "Main Hall"), city="Austin", state="TX")
    db_session.add(venue)
    db_session.flush()
    event = Event(
        promoterID=promoter.promoterID,
        venueID=venue.venueID,
        name=fields.pop("name", "Test Concert"),
        start_at=utcnow() + timedelta(days=days_ahead),
        status=status,
        total_capacity=capacity,
        ticket_price=price,
        **fields,
    )
    db_session.add(event)
    db_session.commit()
    return event


def create_order(db_session, event, *, quantity=2, status=OrderStatus.CONFIRMED, email="buyer@example.com",
                 name="Pat Buyer", created_at=None, payment_intent_id=None, refunded=0.0, unit_price=None):
    unit_price = float(event.ticket_price) if unit_price is None else unit_price
    subtotal = round(unit_price * quantity, 2)
    fee = round(subtotal * 0.10, 2)
    paid = status in (OrderStatus.CONFIRMED, OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED)
    created_at = created_at or utcnow()
    order = Order(
        order_number=f"ORD-{uuid4().hex[:12].upper()}",
        promoterID=event.promoterID,
        eventID=event.eventID,
        customer_email=email,
        customer_name=name,
        status=status,
        payment_status=PaymentStatus.PAID if paid else PaymentStatus.PENDING,
        subtotal=subtotal,
        discount=0,
        service_fee=fee,
        total=round(subtotal + fee, 2),
        refunded_amount=refunded,
        payment_intent_id=payment_intent_id or f"pi_{uuid4().hex[:16]}",
        created_at=created_at,
        paid_at=created_at if paid else None,
    )
    order.items.append(OrderItem(eventID=event.eventID, quantity=quantity, unit_price=unit_price))
    db_session.add(order)
    db_session.commit()
    return order


def create_user(db_session, *, role=UserRole.PROMOTER.value, promoter=None, username=None):
    username = username or f"test_{role}_{uuid4().hex[:8]}"
    user = User(
        username=username,
        email=f"{username}@example.com",
        role=role,
        promoterID=promoter.promoterID if promoter is not None else None,
    )
    user.passwordHash = "hashed_password"
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def sample_promoter(db_session):
    return create_promoter(db_session, slug="rockhouse", name="Rock House")


@pytest.fixture
def sample_event(db_session, sample_promoter):
    return create_event(db_session, sample_promoter)


@pytest.fixture
def sample_order(db_session, sample_event):
    return create_order(db_session, sample_event, status=OrderStatus.PENDING)


@pytest.fixture
def promoter_user(db_session, sample_promoter):
    return create_user(db_session, promoter=sample_promoter)


@pytest.fixture
def admin_user(db_session):
    return create_user(db_session, role=UserRole.ADMIN.value)
