"""Per-event database writes.

Each handler runs inside a transaction opened by the caller and returns an
``Outcome``. Handlers check for an existing row first, but the unique indexes
on transaction hash and subscription id are what make concurrent duplicate
delivery safe: the loser of an insert race gets an ``IntegrityError`` and the
caller maps it back to ``Outcome.DUPLICATE`` through ``is_recorded``.
"""
import enum
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.amounts import to_display_amount
from reconciler.events import (
    ChainEvent,
    ChainLog,
    EventKind,
    PaymentMade,
    SubscriptionCancelled,
    SubscriptionCreated,
    SubscriptionPayment,
)
from reconciler.models import (
    BlockchainPayment,
    BlockchainSubscription,
    BlockchainSubscriptionPayment,
    DeadLetterEvent,
    Order,
    OrderPaymentStatus,
    PaymentType,
    SubscriptionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

PAYMENT_METHOD_BLOCKCHAIN = "BLOCKCHAIN"


class Outcome(str, enum.Enum):
    APPLIED = "APPLIED"
    DUPLICATE = "DUPLICATE"
    SKIPPED = "SKIPPED"
    REJECTED = "REJECTED"


async def mark_order_paid(session: AsyncSession, order_id: str, transaction_hash: str) -> bool:
    result = await session.execute(
        update(Order)
        .where(Order.order_id == order_id)
        .values(
            payment_status=OrderPaymentStatus.PAID,
            payment_method=PAYMENT_METHOD_BLOCKCHAIN,
            blockchain_tx_hash=transaction_hash,
            updated_at=utcnow(),
        )
    )
    if result.rowcount == 0:
        logger.info(f"No order {order_id} to mark paid for {transaction_hash}")
        return False
    return True


async def handle_payment_made(session: AsyncSession, event: PaymentMade) -> Outcome:
    existing = await session.scalar(
        select(BlockchainPayment.id).where(BlockchainPayment.transaction_hash == event.transaction_hash)
    )
    if existing is not None:
        logger.info(f"Payment already processed: {event.transaction_hash}")
        return Outcome.DUPLICATE

    amount_eth = to_display_amount(event.amount)
    session.add(BlockchainPayment(
        transaction_hash=event.transaction_hash,
        block_number=event.block_number,
        payer_address=event.payer,
        merchant_address=event.merchant,
        amount_wei=str(event.amount),
        amount_eth=amount_eth,
        payment_type=PaymentType.ONE_TIME if event.payment_type == 0 else PaymentType.SUBSCRIPTION,
        order_id=event.order_id,
        timestamp=event.occurred_at,
    ))
    await session.flush()

    await mark_order_paid(session, event.order_id, event.transaction_hash)

    logger.info(f"Payment processed: {event.order_id} | {amount_eth} ETH | TX: {event.transaction_hash}")
    return Outcome.APPLIED


async def handle_subscription_created(session: AsyncSession, event: SubscriptionCreated) -> Outcome:
    existing = await session.scalar(
        select(BlockchainSubscription.id).where(BlockchainSubscription.subscription_id == event.subscription_id)
    )
    if existing is not None:
        logger.info(f"Subscription already exists: {event.subscription_id}")
        return Outcome.DUPLICATE

    # Creation charges the first period, unless later charges were stored first
    payment_count, last_payment_timestamp = 1, event.occurred_at
    latest = (await session.execute(
        select(BlockchainSubscriptionPayment.payment_number, BlockchainSubscriptionPayment.timestamp)
        .where(BlockchainSubscriptionPayment.subscription_id == event.subscription_id)
        .order_by(BlockchainSubscriptionPayment.payment_number.desc())
        .limit(1)
    )).first()
    if latest is not None and latest.payment_number > payment_count:
        payment_count, last_payment_timestamp = latest.payment_number, latest.timestamp
        logger.info(f"Subscription {event.subscription_id} created after payment #{payment_count}")

    amount_eth = to_display_amount(event.amount)
    session.add(BlockchainSubscription(
        subscription_id=event.subscription_id,
        subscriber_address=event.subscriber,
        merchant_address=event.merchant,
        amount_wei=str(event.amount),
        amount_eth=amount_eth,
        interval_seconds=event.interval,
        last_payment_timestamp=last_payment_timestamp,
        payment_count=payment_count,
        status=SubscriptionStatus.ACTIVE,
        created_tx_hash=event.transaction_hash,
        created_block_number=event.block_number,
        created_at=event.occurred_at,
    ))
    await session.flush()

    logger.info(
        f"Subscription created: {event.subscription_id} | {amount_eth} ETH every "
        f"{event.interval / 86400:g} days"
    )
    return Outcome.APPLIED


async def handle_subscription_payment(session: AsyncSession, event: SubscriptionPayment) -> Outcome:
    existing = await session.scalar(
        select(BlockchainSubscriptionPayment.id)
        .where(BlockchainSubscriptionPayment.transaction_hash == event.transaction_hash)
    )
    if existing is not None:
        logger.info(f"Subscription payment already processed: {event.transaction_hash}")
        return Outcome.DUPLICATE

    amount_eth = to_display_amount(event.amount)
    session.add(BlockchainSubscriptionPayment(
        subscription_id=event.subscription_id,
        transaction_hash=event.transaction_hash,
        block_number=event.block_number,
        amount_wei=str(event.amount),
        amount_eth=amount_eth,
        payment_number=event.payment_number,
        timestamp=event.occurred_at,
    ))
    await session.flush()

    # Only ever raise the counter, so reordered deliveries cannot move it back
    result = await session.execute(
        update(BlockchainSubscription)
        .where(
            BlockchainSubscription.subscription_id == event.subscription_id,
            BlockchainSubscription.payment_count < event.payment_number,
        )
        .values(
            payment_count=event.payment_number,
            last_payment_timestamp=event.occurred_at,
            updated_at=utcnow(),
        )
    )
    if result.rowcount == 0:
        parent = await session.scalar(
            select(BlockchainSubscription.id).where(BlockchainSubscription.subscription_id == event.subscription_id)
        )
        if parent is None:
            logger.warning(f"Subscription payment for unknown subscription {event.subscription_id}")
        else:
            logger.info(f"Stale payment #{event.payment_number} for {event.subscription_id}, counter unchanged")

    logger.info(f"Subscription payment: {event.subscription_id} | Payment #{event.payment_number} | {amount_eth} ETH")
    return Outcome.APPLIED


async def handle_subscription_cancelled(session: AsyncSession, event: SubscriptionCancelled) -> Outcome:
    result = await session.execute(
        update(BlockchainSubscription)
        .where(
            BlockchainSubscription.subscription_id == event.subscription_id,
            BlockchainSubscription.status == SubscriptionStatus.ACTIVE,
        )
        .values(
            status=SubscriptionStatus.CANCELLED,
            cancelled_at=event.occurred_at,
            cancelled_tx_hash=event.transaction_hash,
            updated_at=utcnow(),
        )
    )
    if result.rowcount:
        logger.info(f"Subscription cancelled: {event.subscription_id}")
        return Outcome.APPLIED

    existing = await session.scalar(
        select(BlockchainSubscription.id).where(BlockchainSubscription.subscription_id == event.subscription_id)
    )
    if existing is None:
        logger.warning(f"Cancellation for unknown subscription {event.subscription_id}: {event.transaction_hash}")
        return Outcome.SKIPPED
    logger.info(f"Subscription already cancelled: {event.subscription_id}")
    return Outcome.DUPLICATE


HANDLERS = {
    EventKind.PAYMENT_MADE: handle_payment_made,
    EventKind.SUBSCRIPTION_CREATED: handle_subscription_created,
    EventKind.SUBSCRIPTION_PAYMENT: handle_subscription_payment,
    EventKind.SUBSCRIPTION_CANCELLED: handle_subscription_cancelled,
}


async def apply_event(session: AsyncSession, event: ChainEvent) -> Outcome:
    return await HANDLERS[event.kind](session, event)


async def is_recorded(session: AsyncSession, event: ChainEvent) -> bool:
    """Whether the idempotency key of ``event`` is already stored."""
    if event.kind == EventKind.PAYMENT_MADE:
        query = select(BlockchainPayment.id).where(BlockchainPayment.transaction_hash == event.transaction_hash)
    elif event.kind == EventKind.SUBSCRIPTION_PAYMENT:
        query = select(BlockchainSubscriptionPayment.id).where(
            BlockchainSubscriptionPayment.transaction_hash == event.transaction_hash
        )
    elif event.kind == EventKind.SUBSCRIPTION_CREATED:
        query = select(BlockchainSubscription.id).where(
            BlockchainSubscription.subscription_id == event.subscription_id
        )
    else:
        return False
    return await session.scalar(query) is not None


async def record_dead_letter(session: AsyncSession, log: ChainLog, error: BaseException):
    session.add(DeadLetterEvent(
        event_kind=log.kind.value,
        transaction_hash=log.transaction_hash,
        block_number=log.block_number,
        payload=log.payload(),
        error_message=f"{type(error).__name__}: {error}",
    ))
    await session.commit()
