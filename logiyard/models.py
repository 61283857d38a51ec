from datetime import date
from decimal import Decimal
from typing import NamedTuple, Optional


def as_text(value):
    """Decimal -> str, date -> ISO string, everything else unchanged."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


# --- Calculation results (pure, produced by logiyard.algorithms) ---

class QuoteBreakdown(NamedTuple):
    weight_charge: Decimal
    subtotal: Decimal
    applied_charge: Decimal
    min_charge_applied: bool
    insurance: Decimal
    handling_fee: Decimal
    total: Decimal


class StorageDays(NamedTuple):
    total_days: int
    free_days_applied: int
    chargeable_days: int


class StorageFees(NamedTuple):
    base_fee: Decimal
    bin_fee: Decimal
    total: Decimal


# --- Class: RateQuote ---
class RateQuote:
    """
    One priced option for a shipment request: the rate it came from and
    every number that went into the total.
    """
    def __init__(self, rate, zone_name: str, weight_kg: Decimal, breakdown: QuoteBreakdown,
                 insurance_currency: Optional[str] = None):
        self.rate_id = rate.id
        self.zone_id = rate.zone_id
        self.zone_name = zone_name
        self.service_type = rate.service_type
        self.currency = rate.currency_code
        self.effective_until: Optional[date] = rate.effective_until
        self.base_rate = rate.base_rate
        self.per_kg_rate = rate.per_kg_rate
        self.min_charge = rate.min_charge
        self.weight_kg = weight_kg
        self.weight_charge = breakdown.weight_charge
        self.subtotal = breakdown.subtotal
        self.applied_charge = breakdown.applied_charge
        self.min_charge_applied = breakdown.min_charge_applied
        self.insurance = breakdown.insurance
        self.insurance_currency = insurance_currency or rate.currency_code
        self.handling_fee = breakdown.handling_fee
        self.total = breakdown.total

    def to_dict(self) -> dict:
        return {key: as_text(value) for key, value in vars(self).items()}

    def __repr__(self):
        return (f"RateQuote(rate={self.rate_id}, zone={self.zone_name}, "
                f"service={self.service_type}, total={self.total} {self.currency})")


# --- Class: StorageChargeResult ---
class StorageChargeResult:
    """The persisted storage charge together with the day split that produced it."""
    def __init__(self, charge, days: StorageDays):
        self.charge_id = charge.id
        self.package_id = charge.package_id
        self.charge_from_date = charge.charge_from_date
        self.charge_to_date = charge.charge_to_date
        self.total_days = days.total_days
        self.free_days_applied = days.free_days_applied
        self.chargeable_days = days.chargeable_days
        self.daily_rate = charge.daily_rate
        self.daily_premium = charge.daily_premium
        self.base_fee = charge.base_storage_fee
        self.bin_fee = charge.bin_location_fee
        self.total = charge.total_storage_fee
        self.currency = charge.currency
        self.bin_location_id = charge.bin_location_id
        self.notes = charge.notes

    def to_dict(self) -> dict:
        return {key: as_text(value) for key, value in vars(self).items()}

    def __repr__(self):
        return (f"StorageChargeResult(package={self.package_id}, days={self.chargeable_days}/"
                f"{self.total_days}, total={self.total} {self.currency})")


# --- Class: BinAvailability ---
class BinAvailability:
    """
    A bin with its derived occupancy. available_capacity is None for bins
    without a package limit.
    """
    def __init__(self, bin_location, current_count: int, utilization_percent: int):
        self.bin_id = bin_location.id
        self.bin_code = bin_location.bin_code
        self.zone_name = bin_location.zone_name
        self.max_capacity: Optional[int] = bin_location.max_capacity
        self.max_weight_kg = bin_location.max_weight_kg
        self.daily_premium = bin_location.daily_premium
        self.currency = bin_location.currency
        self.is_climate_controlled = bin_location.is_climate_controlled
        self.is_secured = bin_location.is_secured
        self.is_accessible = bin_location.is_accessible
        self.is_active = bin_location.is_active
        self.is_available = bin_location.is_available
        self.current_count = current_count
        self.utilization_percent = utilization_percent

    @property
    def available_capacity(self) -> Optional[int]:
        if self.max_capacity is None:
            return None
        return max(0, self.max_capacity - self.current_count)

    @property
    def is_at_capacity(self) -> bool:
        return self.max_capacity is not None and self.current_count >= self.max_capacity

    def to_dict(self) -> dict:
        data = {key: as_text(value) for key, value in vars(self).items()}
        data['available_capacity'] = self.available_capacity
        data['is_at_capacity'] = self.is_at_capacity
        return data

    def __repr__(self):
        cap = "unlimited" if self.max_capacity is None else self.max_capacity
        return f"Bin(ID={self.bin_id}, Code={self.bin_code}, Occ={self.current_count}/{cap})"


# --- Capacity report ---
class ZoneCapacity:
    """Totals for the bins sharing one logistics zone label."""
    def __init__(self, zone_name: str, bins: list, utilization_percent: int):
        self.zone_name = zone_name
        self.bins = bins
        self.utilization_percent = utilization_percent
        self.total_bins = len(bins)
        self.active_bins = sum(1 for b in bins if b.is_active)
        self.occupied_bins = sum(1 for b in bins if b.current_count > 0)
        self.total_capacity = sum(b.max_capacity or 0 for b in bins)
        self.used_capacity = sum(b.current_count for b in bins)

    @property
    def available_capacity(self) -> int:
        return self.total_capacity - self.used_capacity

    def to_dict(self) -> dict:
        return {
            'zone_name': self.zone_name,
            'total_bins': self.total_bins,
            'active_bins': self.active_bins,
            'occupied_bins': self.occupied_bins,
            'total_capacity': self.total_capacity,
            'used_capacity': self.used_capacity,
            'available_capacity': self.available_capacity,
            'utilization_percent': self.utilization_percent,
            'bins': [b.to_dict() for b in self.bins],
        }


class WarehouseCapacity:
    def __init__(self, warehouse_id: int, zones: list, utilization_percent: int):
        self.warehouse_id = warehouse_id
        self.zones = zones
        self.utilization_percent = utilization_percent
        self.total_capacity = sum(z.total_capacity for z in zones)
        self.total_used = sum(z.used_capacity for z in zones)

    @property
    def total_available(self) -> int:
        return self.total_capacity - self.total_used

    def to_dict(self) -> dict:
        return {
            'warehouse_id': self.warehouse_id,
            'total_capacity': self.total_capacity,
            'total_used': self.total_used,
            'total_available': self.total_available,
            'utilization_percent': self.utilization_percent,
            'zones': [z.to_dict() for z in self.zones],
        }
