from sqlalchemy import Column, String, Integer, BigInteger, Numeric, DateTime, Enum, Text, JSON
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class PaymentType(enum.Enum):
    ONE_TIME = "ONE_TIME"
    SUBSCRIPTION = "SUBSCRIPTION"


class PaymentStatus(enum.Enum):
    CONFIRMED = "CONFIRMED"


class SubscriptionStatus(enum.Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class OrderPaymentStatus(enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"


# Wei amounts are uint256 on chain, so they are kept as decimal strings.
WEI = String(78)
ETHER = Numeric(precision=78, scale=18)


class BlockchainPayment(Base):
    __tablename__ = "blockchain_payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_hash = Column(String(66), unique=True, index=True, nullable=False)
    block_number = Column(BigInteger, nullable=False)
    payer_address = Column(String(42), index=True, nullable=False)
    merchant_address = Column(String(42), index=True, nullable=False)
    amount_wei = Column(WEI, nullable=False)
    amount_eth = Column(ETHER, nullable=False)
    payment_type = Column(Enum(PaymentType), nullable=False)
    order_id = Column(String, index=True, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    status = Column(Enum(PaymentStatus), default=PaymentStatus.CONFIRMED, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class BlockchainSubscription(Base):
    __tablename__ = "blockchain_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(String, unique=True, index=True, nullable=False)
    subscriber_address = Column(String(42), index=True, nullable=False)
    merchant_address = Column(String(42), index=True, nullable=False)
    amount_wei = Column(WEI, nullable=False)
    amount_eth = Column(ETHER, nullable=False)
    interval_seconds = Column(BigInteger, nullable=False)
    last_payment_timestamp = Column(DateTime(timezone=True), nullable=False)
    payment_count = Column(Integer, default=1, nullable=False)
    status = Column(Enum(SubscriptionStatus), default=SubscriptionStatus.ACTIVE, nullable=False)
    created_tx_hash = Column(String(66), nullable=False)
    created_block_number = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    cancelled_tx_hash = Column(String(66), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class BlockchainSubscriptionPayment(Base):
    __tablename__ = "blockchain_subscription_payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Back reference only; subscription rows are never deleted
    subscription_id = Column(String, index=True, nullable=False)
    transaction_hash = Column(String(66), unique=True, index=True, nullable=False)
    block_number = Column(BigInteger, nullable=False)
    amount_wei = Column(WEI, nullable=False)
    amount_eth = Column(ETHER, nullable=False)
    payment_number = Column(Integer, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    status = Column(Enum(PaymentStatus), default=PaymentStatus.CONFIRMED, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, unique=True, index=True, nullable=False)
    payment_status = Column(Enum(OrderPaymentStatus), default=OrderPaymentStatus.PENDING, nullable=False)
    payment_method = Column(String, nullable=True)
    blockchain_tx_hash = Column(String(66), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class DeadLetterEvent(Base):
    """Events whose write was rolled back"""
    __tablename__ = "dead_letter_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_kind = Column(String(50), index=True, nullable=False)
    transaction_hash = Column(String(66), index=True, nullable=True)
    block_number = Column(BigInteger, nullable=True)
    payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
