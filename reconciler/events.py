"""Typed records for the payment contract's events.

The event source hands the reconciler raw ``ChainLog`` objects carrying the
decoded ABI arguments. ``parse_event`` validates them into one of the pydantic
models below; a log with missing or malformed fields raises
``pydantic.ValidationError`` before anything touches the database.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Mapping, Type

from pydantic import BaseModel, ConfigDict, Field

from reconciler.amounts import to_display_amount

# Column limits of the tables the events are written to
MAX_INTEGER = 2**31 - 1
MAX_BIG_INTEGER = 2**63 - 1
MAX_UINT256 = 2**256 - 1
# 9999-12-31T23:59:59Z, the last second a datetime can hold
MAX_TIMESTAMP = 253402300799


class EventKind(str, enum.Enum):
    PAYMENT_MADE = "PaymentMade"
    SUBSCRIPTION_CREATED = "SubscriptionCreated"
    SUBSCRIPTION_PAYMENT = "SubscriptionPayment"
    SUBSCRIPTION_CANCELLED = "SubscriptionCancelled"


@dataclass(frozen=True)
class ChainLog:
    kind: EventKind
    args: Mapping[str, Any]
    transaction_hash: str
    block_number: int
    log_index: int = 0

    def payload(self) -> Dict[str, Any]:
        """JSON-safe copy of the log, used for dead-letter records."""
        return {
            "kind": self.kind.value,
            "args": {key: _jsonable(value) for key, value in dict(self.args).items()},
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "log_index": self.log_index,
        }


def _jsonable(value):
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, int):
        # uint256 values do not survive every JSON consumer as numbers
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


class ChainEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    kind: ClassVar[EventKind]

    transaction_hash: str = Field(..., min_length=1)
    block_number: int = Field(..., ge=0, le=MAX_BIG_INTEGER)
    log_index: int = Field(0, ge=0)
    timestamp: int = Field(..., ge=0, le=MAX_TIMESTAMP)

    @property
    def occurred_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    def notification_payload(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["occurred_at"] = self.occurred_at.isoformat()
        amount = getattr(self, "amount", None)
        if amount is not None:
            data["amount"] = str(amount)
            data["amount_eth"] = str(to_display_amount(amount))
        return data


class PaymentMade(ChainEvent):
    kind: ClassVar[EventKind] = EventKind.PAYMENT_MADE

    payer: str = Field(..., min_length=1)
    merchant: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0, le=MAX_UINT256)
    payment_type: int = Field(..., ge=0, le=255, alias="paymentType")
    order_id: str = Field(..., min_length=1, alias="orderId")


class SubscriptionCreated(ChainEvent):
    kind: ClassVar[EventKind] = EventKind.SUBSCRIPTION_CREATED

    subscriber: str = Field(..., min_length=1)
    merchant: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0, le=MAX_UINT256)
    interval: int = Field(..., gt=0, le=MAX_BIG_INTEGER)
    subscription_id: str = Field(..., min_length=1, alias="subscriptionId")


class SubscriptionPayment(ChainEvent):
    kind: ClassVar[EventKind] = EventKind.SUBSCRIPTION_PAYMENT

    subscriber: str = Field(..., min_length=1)
    merchant: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0, le=MAX_UINT256)
    subscription_id: str = Field(..., min_length=1, alias="subscriptionId")
    payment_number: int = Field(..., ge=1, le=MAX_INTEGER, alias="paymentNumber")


class SubscriptionCancelled(ChainEvent):
    kind: ClassVar[EventKind] = EventKind.SUBSCRIPTION_CANCELLED

    subscriber: str = Field(..., min_length=1)
    subscription_id: str = Field(..., min_length=1, alias="subscriptionId")


EVENT_MODELS: Dict[EventKind, Type[ChainEvent]] = {
    EventKind.PAYMENT_MADE: PaymentMade,
    EventKind.SUBSCRIPTION_CREATED: SubscriptionCreated,
    EventKind.SUBSCRIPTION_PAYMENT: SubscriptionPayment,
    EventKind.SUBSCRIPTION_CANCELLED: SubscriptionCancelled,
}


def parse_event(log: ChainLog) -> ChainEvent:
    model = EVENT_MODELS[EventKind(log.kind)]
    data = dict(log.args)
    data.update(
        transaction_hash=log.transaction_hash,
        block_number=log.block_number,
        log_index=log.log_index,
    )
    return model.model_validate(data)
