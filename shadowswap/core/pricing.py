from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from shadowswap.core.models import Intent, same_address


BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class PriceRule:
    """Fixed native/secondary exchange rate with a symmetric tolerance.

    ``price_ratio`` is secondary base-units per native base-unit. The tolerance
    is a fraction of the expected secondary amount, truncated toward zero.
    """

    native_token: str
    price_ratio: int = 1000
    tolerance_bps: int = 500

    def expected_secondary(self, native_amount: int) -> int:
        return native_amount * self.price_ratio

    def tolerance(self, expected: int) -> int:
        return expected * self.tolerance_bps // BPS_DENOMINATOR

    def within_tolerance(self, native_amount: int, secondary_amount: int) -> bool:
        expected = self.expected_secondary(native_amount)
        return abs(expected - secondary_amount) <= self.tolerance(expected)

    def legs(self, a: Intent, b: Intent) -> Optional[tuple[int, int]]:
        """Return ``(native_amount, secondary_amount)`` for a pair, or None if
        neither side spends the native asset."""
        if same_address(a.token_in, self.native_token):
            return a.amount_in, b.amount_in
        if same_address(b.token_in, self.native_token):
            return b.amount_in, a.amount_in
        return None


def is_inverse_pair(a: Intent, b: Intent) -> bool:
    return same_address(a.token_in, b.token_out) and same_address(a.token_out, b.token_in)


def is_price_compatible(rule: PriceRule, a: Intent, b: Intent) -> bool:
    legs = rule.legs(a, b)
    if legs is None:
        return False
    native_amount, secondary_amount = legs
    return rule.within_tolerance(native_amount, secondary_amount)
