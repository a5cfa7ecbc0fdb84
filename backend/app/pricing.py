from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from app.errors import InvalidRequest


@dataclass(frozen=True)
class Quote:
    houses: int
    price: int
    duration_days: int


@dataclass(frozen=True)
class PricingPolicy:
    """
    Price and validity window for an "N nearest houses" plan.

    Bundle sizes come from `table`; anything else is `per_house_rate` per house.
    Duration is floor(N / 5 * 4) - 1 days, never less than `min_duration_days`.
    """

    table: Mapping[int, int] = field(default_factory=dict)
    per_house_rate: int = 8
    min_duration_days: int = 1
    max_houses: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "table", MappingProxyType({int(k): int(v) for k, v in dict(self.table).items()}))

    def _check(self, houses: int) -> int:
        try:
            n = int(houses)
        except (TypeError, ValueError):
            raise InvalidRequest("Number of houses must be an integer", fields={"houses": houses})
        if n < 1:
            raise InvalidRequest("Number of houses must be at least 1", fields={"houses": n})
        if self.max_houses is not None and n > int(self.max_houses):
            raise InvalidRequest(f"At most {int(self.max_houses)} houses can be unlocked in one plan", fields={"houses": n})
        return n

    def price(self, houses: int) -> int:
        n = self._check(houses)
        if n in self.table:
            return self.table[n]
        return n * int(self.per_house_rate)

    @staticmethod
    def raw_duration_days(houses: int) -> int:
        # Integer form of floor(n / 5 * 4) - 1. N = 20 gives 15 days, not the 17 some copy quotes.
        return (4 * int(houses)) // 5 - 1

    def duration_days(self, houses: int) -> int:
        n = self._check(houses)
        return max(self.raw_duration_days(n), int(self.min_duration_days))

    def quote(self, houses: int) -> Quote:
        n = self._check(houses)
        return Quote(houses=n, price=self.price(n), duration_days=self.duration_days(n))

    def as_dict(self) -> dict:
        return {
            "pricing": {str(k): v for k, v in sorted(self.table.items())},
            "per_house_rate": int(self.per_house_rate),
            "min_duration_days": int(self.min_duration_days),
            "max_houses": None if self.max_houses is None else int(self.max_houses),
        }
