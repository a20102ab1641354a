# broker/engine/interfaces.py
"""External collaborators the engine calls into."""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, Protocol, Union

from broker.domain.models import PriceReading

if TYPE_CHECKING:
    from broker.engine.context import EngineState


class FillState(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    REJECTED = "rejected"


@dataclass(frozen=True)
class FillStatus:
    """Result of polling an order."""
    state: FillState
    filled_quantity: Decimal = Decimal(0)
    reason: str = ""

    @classmethod
    def pending(cls) -> "FillStatus":
        return cls(FillState.PENDING)

    @classmethod
    def filled(cls, quantity: Decimal) -> "FillStatus":
        return cls(FillState.FILLED, filled_quantity=quantity)

    @classmethod
    def rejected(cls, reason: str = "") -> "FillStatus":
        return cls(FillState.REJECTED, reason=reason)


class PriceFeed(Protocol):
    def current_price(self, pair: str) -> Union[PriceReading, Decimal]:
        """Latest price for pair. Raises FeedUnavailableError."""
        ...


class ExecutionClient(Protocol):
    def submit_sell_order(
        self,
        quantity: Decimal,
        limit_price: Optional[Decimal],
        client_order_id: str,
    ) -> str:
        """
        Send a sell order (market order when limit_price is None) and return
        the venue's order id. Raises ExecutionRejectedError or
        ExecutionTimeoutError; after a timeout the order can still be polled
        by client_order_id.
        """
        ...

    def poll_fill_status(self, order_id: str) -> FillStatus:
        """Raises ExecutionTimeoutError."""
        ...


class PersistenceStore(Protocol):
    """Stores the EngineState of one pair. save() must be atomic."""

    def load(self) -> "EngineState":
        ...

    def save(self, state: "EngineState") -> None:
        ...
