"""
Pricing tables and the running cost ledger.

Costs are the dot-product of per-kind running unit sums and per-unit
prices, computed with Decimal arithmetic and conservative rounding.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_UP
from typing import Dict, List, Optional, Union

from genloop.storage.models import CostEvent, CostKind
from genloop.storage.repository import CostRepository

Number = Union[int, float, Decimal]


@dataclass(frozen=True)
class PricingTable:
    """Per-unit price for each metered kind."""
    prices: Dict[CostKind, Decimal]

    def get_price(self, kind: CostKind) -> Decimal:
        """Get the per-unit price for a metered kind.

        Args:
            kind: Metered unit kind

        Returns:
            Price of one unit

        Raises:
            ValueError: If the kind has no price
        """
        if kind not in self.prices:
            raise ValueError(f"No price for cost kind: {kind.value}")
        return self.prices[kind]

    @classmethod
    def from_rates(
        cls,
        text_input_per_million: Number,
        text_output_per_million: Number,
        image: Number
    ) -> "PricingTable":
        """Build a table from the per-million token rates and per-image price."""
        million = Decimal("1000000")
        return cls({
            CostKind.TEXT_INPUT_UNITS: Decimal(str(text_input_per_million)) / million,
            CostKind.TEXT_OUTPUT_UNITS: Decimal(str(text_output_per_million)) / million,
            CostKind.IMAGE_UNITS: Decimal(str(image)),
        })


# Gemini image-preview list prices
DEFAULT_PRICING = PricingTable.from_rates(
    text_input_per_million="2.00",
    text_output_per_million="12.00",
    image="0.134"
)


def calculate_cost(sums: Dict[CostKind, Decimal], pricing: PricingTable) -> Decimal:
    """Dot-product of unit sums and unit prices, rounded UP to 4 places."""
    total = Decimal("0")
    for kind, amount in sums.items():
        if amount:
            total += amount * pricing.get_price(kind)
    return total.quantize(Decimal("0.0001"), rounding=ROUND_UP)


class CostLedger:
    """Append-only running sum of metered units.

    The ledger never goes negative. ``reset`` is the only way to zero it
    and is meant for explicit operator action. When a repository is given
    every recorded event is also persisted.
    """

    def __init__(self, repository: Optional[CostRepository] = None):
        self._repository = repository
        self._events: List[CostEvent] = []
        self._sums: Dict[CostKind, Decimal] = {kind: Decimal("0") for kind in CostKind}

    def record(self, kind: CostKind, amount: Number, operation: str = "") -> CostEvent:
        """Append one metered event.

        Args:
            kind: Metered unit kind
            amount: Units consumed (must be >= 0)
            operation: Name of the external call that consumed them

        Returns:
            The recorded event

        Raises:
            ValueError: If amount is negative
        """
        value = Decimal(str(amount))
        if value < 0:
            raise ValueError("cost amount must be >= 0")
        event = CostEvent(
            kind=kind,
            amount=value,
            timestamp=datetime.now(),
            operation=operation
        )
        if self._repository is not None:
            self._repository.insert(event)
        self._events.append(event)
        self._sums[kind] += value
        return event

    def sums(self) -> Dict[CostKind, Decimal]:
        """Running unit sums per kind."""
        return dict(self._sums)

    def events(self) -> List[CostEvent]:
        return list(self._events)

    def total(self, pricing: PricingTable = DEFAULT_PRICING) -> Decimal:
        """Total cost of everything recorded since the last reset."""
        return calculate_cost(self._sums, pricing)

    def reset(self) -> None:
        """Zero the in-process ledger. Persisted events are left untouched."""
        self._events.clear()
        self._sums = {kind: Decimal("0") for kind in CostKind}
