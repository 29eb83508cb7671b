from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from ..config import settings
from ..errors import ValidationFailed


MILLE = Decimal("1000")
CPM_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class RevenueSplit:
    cpm: Decimal
    total: Decimal
    creator: Decimal
    platform: Decimal

    def as_floats(self) -> dict[str, float]:
        return {
            "totalRevenue": float(self.total),
            "creatorRevenue": float(self.creator),
            "platformRevenue": float(self.platform),
            "cpm": float(self.cpm),
        }


def to_decimal(value: object) -> Decimal:
    try:
        result = Decimal(str(value if value is not None else 0))
    except InvalidOperation as exc:
        raise ValidationFailed("Invalid numeric value.") from exc
    if not result.is_finite():
        raise ValidationFailed("Invalid numeric value.")
    return result


def creator_share_rate() -> Decimal:
    return to_decimal(settings.creator_share)


def platform_share_rate() -> Decimal:
    return Decimal("1") - creator_share_rate()


def revenue_per_view(cpm: object) -> Decimal:
    cpm_dec = to_decimal(cpm)
    if cpm_dec <= 0:
        raise ValidationFailed("CPM must be greater than zero.")
    return cpm_dec / MILLE


def split_revenue(cpm: object) -> RevenueSplit:
    """Revenue of one monetized view and its creator/platform shares.

    The platform share is the remainder so both shares always sum to the total.
    """
    total = revenue_per_view(cpm)
    creator = total * creator_share_rate()
    return RevenueSplit(cpm=to_decimal(cpm), total=total, creator=creator, platform=total - creator)


def effective_cpm(video: dict) -> Decimal:
    cpm = to_decimal(video.get("cpm") or settings.default_cpm)
    if cpm <= 0:
        return to_decimal(settings.default_cpm)
    return cpm


def validate_cpm(cpm: object) -> Decimal:
    cpm_dec = to_decimal(cpm)
    if cpm_dec < settings.min_cpm or cpm_dec > settings.max_cpm:
        raise ValidationFailed(f"CPM must be between {settings.min_cpm} and {settings.max_cpm}.", code="invalid_cpm")
    # videos.cpm holds two decimal places.
    return cpm_dec.quantize(CPM_PLACES, rounding=ROUND_HALF_UP)
