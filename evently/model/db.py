from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    # id at the identity provider
    clerk_id = Column(String, nullable=False, unique=True)
    email = Column(String, nullable=False, unique=True)
    username = Column(String, nullable=False, unique=True)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    photo = Column(String, nullable=False, default="")
    created_at = Column(Float, nullable=False)


class Category(Base):
    __tablename__ = "categories"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)


class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    created_at = Column(Float, nullable=False, index=True)
    image_url = Column(String, nullable=False, default="")
    start_date_time = Column(Float, nullable=False)
    end_date_time = Column(Float, nullable=False)
    price = Column(String, nullable=False, default="")
    is_free = Column(Boolean, nullable=False, default=False)
    url = Column(String, nullable=True)

    category_id = Column(
        String, ForeignKey("categories.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    # NULL once the organizer's account is deleted
    organizer_id = Column(
        String, ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )

    category = relationship(Category, lazy="raise")
    organizer = relationship(User, lazy="raise")


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False, index=True)
    # checkout session id at the payment provider
    stripe_id = Column(String, nullable=False, unique=True)
    total_amount = Column(String, nullable=False, default="0")

    event_id = Column(
        String, ForeignKey("events.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    buyer_id = Column(
        String, ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )

    event = relationship(Event, lazy="raise")
    buyer = relationship(User, lazy="raise")


class PaymentSession(Base):
    __tablename__ = "payment_sessions"
    psid = Column(String, primary_key=True)
    event_id = Column(String, nullable=False)
    buyer_id = Column(String, nullable=False)
    event_title = Column(String, nullable=False, default="")
    amount = Column(String, nullable=False)  # cents
    currency = Column(String, nullable=False, default="usd")
    redirect_url = Column(String, nullable=False, default="")
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)


class PaymentSessionPending(Base):
    __tablename__ = "payment_sessions_pending"
    psid = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False, index=True)


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


class FulfillmentGate(Base):
    __tablename__ = "fulfillment_gates"
    psid = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)
