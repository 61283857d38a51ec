# logiyard/algorithms.py

import math
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from logiyard.errors import InvalidRangeError
from logiyard.models import QuoteBreakdown, StorageDays, StorageFees

CENT = Decimal("0.01")
SECONDS_PER_DAY = 86400

DateLike = Union[date, datetime]


# ====================================================================
# DECIMAL HELPERS
# ====================================================================

def to_decimal(value, field: str = "value") -> Decimal:
    """
    Converts user input to an exact Decimal.
    Floats go through their shortest repr, so 0.1 becomes Decimal('0.1')
    rather than the binary expansion.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise InvalidRangeError(f"{field} must be a number", field=field, value=value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidRangeError(f"{field} must be a number", field=field, value=value)

    if not result.is_finite():
        raise InvalidRangeError(f"{field} must be finite", field=field, value=value)
    return result


def non_negative(value, field: str) -> Decimal:
    result = to_decimal(value, field)
    if result < 0:
        raise InvalidRangeError(f"{field} must not be negative", field=field, value=result)
    return result


def quantize_money(amount: Decimal, quantum: Decimal = CENT) -> Decimal:
    return amount.quantize(quantum, rounding=ROUND_HALF_UP)


def normalize_country_code(code: str) -> str:
    normalized = (code or "").strip().upper()
    if len(normalized) != 2 or not normalized.isalpha():
        raise InvalidRangeError("Country code must be two letters", country_code=code)
    return normalized


# ====================================================================
# DATES
# ====================================================================

def parse_date(value, field: str = "date") -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise InvalidRangeError(f"{field} must be an ISO date", field=field, value=value)


def as_naive_utc(moment: datetime) -> datetime:
    """Timestamps with an offset are shifted to UTC; naive ones are taken as given."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def parse_moment(value, field: str = "date") -> DateLike:
    """Like parse_date, but keeps the time of day when one is given."""
    if isinstance(value, datetime):
        return as_naive_utc(value)
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if len(text) <= 10:
        return parse_date(text, field)
    try:
        return as_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        raise InvalidRangeError(f"{field} must be an ISO date or timestamp", field=field, value=value)


def day_after_partial(moment: DateLike) -> date:
    """The first whole day not touched by moment: its own date at midnight, else the next one."""
    if isinstance(moment, datetime):
        if moment.time() == time.min:
            return moment.date()
        return moment.date() + timedelta(days=1)
    return moment


# ====================================================================
# EFFECTIVE WINDOWS
# ====================================================================

def validate_window(effective_from: date, effective_until: Optional[date]) -> None:
    """The end of a closed window must fall strictly after its start."""
    if effective_until is not None and effective_until <= effective_from:
        raise InvalidRangeError(
            "Effective until date must be after effective from date",
            effective_from=effective_from,
            effective_until=effective_until,
        )


def intervals_overlap(new_from: date, new_until: Optional[date],
                      existing_from: date, existing_until: Optional[date]) -> bool:
    """
    Inclusive overlap test for effective windows. A missing end means the
    window runs forever from its start.
    """
    if new_until is None and existing_until is None:
        return True
    if new_until is None:
        return existing_until >= new_from
    if existing_until is None:
        return existing_from <= new_until
    return existing_from <= new_until and new_from <= existing_until


# ====================================================================
# SHIPPING QUOTE
# ====================================================================

def compute_quote(weight_kg: Decimal, base_rate: Decimal, per_kg_rate: Decimal,
                  min_charge: Decimal, declared_value: Decimal,
                  insurance_rate: Decimal, insurance_minimum: Decimal,
                  handling_fee: Decimal, quantum: Decimal = CENT) -> QuoteBreakdown:
    """
    Prices one rate for one shipment.

    Every component is rounded to the money quantum before it is combined,
    so the printed breakdown always adds up to the printed total. The
    minimum charge replaces the subtotal outright when it is larger.
    """
    weight_charge = quantize_money(weight_kg * per_kg_rate, quantum)
    subtotal = quantize_money(base_rate, quantum) + weight_charge
    floor = quantize_money(min_charge, quantum)

    min_charge_applied = subtotal < floor
    applied_charge = floor if min_charge_applied else subtotal

    insurance = quantize_money(max(declared_value * insurance_rate, insurance_minimum), quantum)
    handling = quantize_money(handling_fee, quantum)

    return QuoteBreakdown(
        weight_charge=weight_charge,
        subtotal=subtotal,
        applied_charge=applied_charge,
        min_charge_applied=min_charge_applied,
        insurance=insurance,
        handling_fee=handling,
        total=applied_charge + insurance + handling,
    )


# ====================================================================
# STORAGE BILLING
# ====================================================================

def _as_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return as_naive_utc(value)
    return datetime(value.year, value.month, value.day)


def span_in_days(from_date: DateLike, to_date: DateLike) -> int:
    """Whole days between two instants, any part of a day counting as a full day."""
    seconds = (_as_datetime(to_date) - _as_datetime(from_date)).total_seconds()
    return math.ceil(seconds / SECONDS_PER_DAY)


def split_storage_days(total_days: int, free_days: int) -> StorageDays:
    if total_days <= 0:
        raise InvalidRangeError("Invalid date range for storage calculation", total_days=total_days)
    free_days = max(0, free_days)
    return StorageDays(
        total_days=total_days,
        free_days_applied=min(total_days, free_days),
        chargeable_days=max(0, total_days - free_days),
    )


def storage_fees(chargeable_days: int, daily_rate: Decimal, daily_premium: Decimal,
                 quantum: Decimal = CENT) -> StorageFees:
    base_fee = quantize_money(chargeable_days * daily_rate, quantum)
    bin_fee = quantize_money(chargeable_days * daily_premium, quantum)
    return StorageFees(base_fee=base_fee, bin_fee=bin_fee, total=base_fee + bin_fee)


# ====================================================================
# CAPACITY
# ====================================================================

def utilization_percent(used: int, capacity: Optional[int]) -> int:
    """Rounded share of capacity in use; 0 when the capacity is unlimited or zero."""
    if not capacity:
        return 0
    share = Decimal(used) * 100 / Decimal(capacity)
    return int(share.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def has_room(current_count: int, max_capacity: Optional[int]) -> bool:
    return max_capacity is None or current_count < max_capacity
