from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

PRICE_TOLERANCE = Decimal("0.01")
_CENTS = Decimal("0.01")


class UnknownCoupon(Exception):
    pass


def to_money(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


class DiscountPolicy(Protocol):
    def discount_for(self, price: Decimal, coupon_code: str | None) -> Decimal:
        """Return the discount amount; raise UnknownCoupon for a bad code."""
        ...


class CouponPercentagePolicy:
    """Percentage-off coupons from COUPON_CODES (``CODE:percent``).

    No coupon means no discount; a code that is not configured is
    rejected rather than silently ignored.
    """

    def __init__(self, coupons: dict[str, Decimal]) -> None:
        self._coupons = {code.upper(): percent for code, percent in coupons.items()}

    def discount_for(self, price: Decimal, coupon_code: str | None) -> Decimal:
        if not coupon_code:
            return Decimal("0.00")
        percent = self._coupons.get(coupon_code.strip().upper())
        if percent is None:
            raise UnknownCoupon(coupon_code)
        return to_money(price * percent / Decimal("100"))


@dataclass(frozen=True, slots=True)
class Quote:
    list_price: Decimal
    discount: Decimal

    @property
    def amount_due(self) -> Decimal:
        return to_money(max(self.list_price - self.discount, Decimal("0.00")))

    def matches(self, amount: Decimal) -> bool:
        return abs(to_money(amount) - self.amount_due) <= PRICE_TOLERANCE


def quote(effective_price: Decimal, policy: DiscountPolicy, coupon_code: str | None) -> Quote:
    return Quote(
        list_price=to_money(effective_price),
        discount=policy.discount_for(effective_price, coupon_code),
    )
