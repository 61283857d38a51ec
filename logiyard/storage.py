# logiyard/storage.py

import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Iterable, List, Optional

from db.setup import PackageBinAssignment, StorageCharge, StoragePricing, session_scope
from logiyard.algorithms import (
    day_after_partial,
    intervals_overlap,
    non_negative,
    parse_date,
    parse_moment,
    quantize_money,
    span_in_days,
    split_storage_days,
    storage_fees,
    to_decimal,
    validate_window,
)
from logiyard.config import Settings, settings as default_settings
from logiyard.directory import require_package, require_warehouse
from logiyard.errors import (
    AlreadyBilledError,
    InUseError,
    InvalidRangeError,
    NotFoundError,
    OverlapError,
    PolicyNotFoundError,
)
from logiyard.models import StorageChargeResult

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

POLICY_FIELDS = frozenset({
    'free_days', 'daily_rate', 'currency', 'effective_from', 'effective_until', 'is_active', 'notes',
})


def find_active_policy(session, tenant_id: str, warehouse_id: int,
                       from_date: date, to_date: date) -> Optional[StoragePricing]:
    """The active policy whose window covers the whole [from_date, to_date] range."""
    return (
        session.query(StoragePricing)
        .filter(
            StoragePricing.tenant_id == tenant_id,
            StoragePricing.warehouse_id == warehouse_id,
            StoragePricing.is_active.is_(True),
            StoragePricing.effective_from <= from_date,
            (StoragePricing.effective_until.is_(None)) | (StoragePricing.effective_until >= to_date),
        )
        .order_by(StoragePricing.effective_from.desc(), StoragePricing.id.desc())
        .first()
    )


def find_active_assignment(session, package_id: int, as_of: datetime) -> Optional[PackageBinAssignment]:
    return (
        session.query(PackageBinAssignment)
        .filter(
            PackageBinAssignment.package_id == package_id,
            PackageBinAssignment.removed_at.is_(None),
            PackageBinAssignment.assigned_at <= as_of,
        )
        .first()
    )


def _end_of(moment) -> datetime:
    if isinstance(moment, datetime):
        return moment
    return datetime.combine(moment, time.max)


class StorageBilling:
    """
    Storage pricing policies and the storage fee calculation.

    A charge covers [from, to): the next run for the same package may start
    on the previous run's end date but never before it.
    """

    def __init__(self, session_factory, settings: Optional[Settings] = None):
        self.DBSession = session_factory
        self.settings = settings or default_settings

    # --- Pricing policies ---

    def list_policies(self, tenant_id: str, warehouse_id: Optional[int] = None,
                      active_only: bool = False) -> List[StoragePricing]:
        with session_scope(self.DBSession) as session:
            query = session.query(StoragePricing).filter_by(tenant_id=tenant_id)
            if warehouse_id is not None:
                query = query.filter_by(warehouse_id=warehouse_id)
            if active_only:
                query = query.filter_by(is_active=True)
            return query.order_by(StoragePricing.warehouse_id, StoragePricing.effective_from,
                                  StoragePricing.id).all()

    def create_policy(self, tenant_id: str, warehouse_id: int, free_days: int, daily_rate,
                      effective_from, effective_until=None, currency: Optional[str] = None,
                      notes: Optional[str] = None, is_active: bool = True) -> StoragePricing:
        values = self._clean_policy({
            'free_days': free_days,
            'daily_rate': daily_rate,
            'currency': currency or self.settings.default_currency,
            'effective_from': effective_from,
            'effective_until': effective_until,
            'is_active': is_active,
            'notes': notes,
        })
        validate_window(values['effective_from'], values['effective_until'])

        with session_scope(self.DBSession) as session:
            require_warehouse(session, warehouse_id, tenant_id, lock=True)
            if values['is_active']:
                self._guard_policy_overlap(session, tenant_id, warehouse_id, values)

            policy = StoragePricing(tenant_id=tenant_id, warehouse_id=warehouse_id, **values)
            session.add(policy)
            session.flush()
            logger.info("Created storage policy %s for warehouse %s: %d free days, %s/day",
                        policy.id, warehouse_id, policy.free_days, policy.daily_rate)
            return policy

    def update_policy(self, policy_id: int, tenant_id: str, **patch) -> StoragePricing:
        """Applies the given fields. Passing effective_until=None makes the policy open-ended."""
        unknown = set(patch) - POLICY_FIELDS
        if unknown:
            raise InvalidRangeError("Unknown storage policy fields", fields=",".join(sorted(unknown)))
        changes = self._clean_policy(patch)

        with session_scope(self.DBSession) as session:
            policy = session.query(StoragePricing).filter_by(id=policy_id, tenant_id=tenant_id).one_or_none()
            if policy is None:
                raise NotFoundError("StoragePricing", policy_id)
            require_warehouse(session, policy.warehouse_id, tenant_id, lock=True)

            merged = {field: getattr(policy, field) for field in POLICY_FIELDS}
            merged.update(changes)
            validate_window(merged['effective_from'], merged['effective_until'])
            if merged['is_active']:
                self._guard_policy_overlap(session, tenant_id, policy.warehouse_id, merged,
                                           exclude_id=policy.id)

            for field, value in changes.items():
                setattr(policy, field, value)
            session.flush()
            logger.info("Updated storage policy %s: %s", policy.id, ", ".join(sorted(changes)) or "no changes")
            return policy

    def get_active_policy(self, warehouse_id: int, tenant_id: str, from_date, to_date) -> StoragePricing:
        start, end = parse_date(from_date, 'from_date'), parse_date(to_date, 'to_date')
        with session_scope(self.DBSession) as session:
            policy = find_active_policy(session, tenant_id, warehouse_id, start, end)
        if policy is None:
            raise PolicyNotFoundError(
                "No active storage pricing found for this warehouse",
                warehouse_id=warehouse_id, from_date=start, to_date=end,
            )
        return policy

    # --- Charge calculation ---

    def calculate_charge(self, package_id: int, warehouse_id: int, tenant_id: str,
                         from_date, to_date, calculated_by: Optional[str] = None) -> StorageChargeResult:
        start = parse_moment(from_date, 'from_date')
        end = parse_moment(to_date, 'to_date')
        total_days = span_in_days(start, end)
        if total_days <= 0:
            raise InvalidRangeError("Invalid date range for storage calculation",
                                    from_date=start, to_date=end)
        start_day, end_day = parse_date(start), parse_date(end)
        # A partly used last day is billed in full, so the recorded span covers all of it.
        billed_until = day_after_partial(end)

        with session_scope(self.DBSession) as session:
            require_warehouse(session, warehouse_id, tenant_id)
            require_package(session, package_id, lock=True)

            billed = (
                session.query(StorageCharge)
                .filter(
                    StorageCharge.package_id == package_id,
                    StorageCharge.charge_from_date < billed_until,
                    StorageCharge.charge_to_date > start_day,
                )
                .order_by(StorageCharge.charge_to_date.desc())
                .first()
            )
            if billed is not None:
                logger.warning("Package %s already billed %s..%s by charge %s",
                               package_id, billed.charge_from_date, billed.charge_to_date, billed.id)
                raise AlreadyBilledError(package_id, billed.id)

            policy = find_active_policy(session, tenant_id, warehouse_id, start_day, end_day)
            if policy is None:
                raise PolicyNotFoundError(
                    "No active storage pricing found for this warehouse",
                    warehouse_id=warehouse_id, from_date=start_day, to_date=end_day,
                )

            days = split_storage_days(total_days, policy.free_days)

            assignment = find_active_assignment(session, package_id, _end_of(end))
            premium = ZERO
            bin_location_id = None
            if assignment is not None and assignment.bin.daily_premium:
                premium = assignment.bin.daily_premium
                bin_location_id = assignment.bin_id

            fees = storage_fees(days.chargeable_days, policy.daily_rate, premium,
                                self.settings.money_quantum)

            charge = StorageCharge(
                tenant_id=tenant_id,
                package_id=package_id,
                charge_from_date=start_day,
                charge_to_date=billed_until,
                total_days=days.total_days,
                days_charged=days.chargeable_days,
                free_days_applied=days.free_days_applied,
                daily_rate=policy.daily_rate,
                daily_premium=premium,
                base_storage_fee=fees.base_fee,
                bin_location_fee=fees.bin_fee,
                total_storage_fee=fees.total,
                currency=policy.currency,
                bin_location_id=bin_location_id,
                calculated_by=calculated_by,
                notes=(f"Storage charge calculated for {days.total_days} total days, "
                       f"{days.free_days_applied} free days applied, "
                       f"{days.chargeable_days} chargeable days"),
            )
            session.add(charge)
            session.flush()
            logger.info("Storage charge %s for package %s: %s %s (%d chargeable days)",
                        charge.id, package_id, charge.total_storage_fee, charge.currency,
                        days.chargeable_days)
            return StorageChargeResult(charge, days)

    # --- Invoicing hand-off ---

    def get_charges(self, package_id: int, tenant_id: str) -> List[StorageCharge]:
        with session_scope(self.DBSession) as session:
            return (
                session.query(StorageCharge)
                .filter_by(package_id=package_id, tenant_id=tenant_id)
                .order_by(StorageCharge.charge_from_date)
                .all()
            )

    def get_unbilled_charges(self, tenant_id: str) -> List[StorageCharge]:
        with session_scope(self.DBSession) as session:
            return (
                session.query(StorageCharge)
                .filter_by(tenant_id=tenant_id, is_invoiced=False)
                .order_by(StorageCharge.calculated_at.desc(), StorageCharge.id.desc())
                .all()
            )

    def mark_invoiced(self, charge_ids: Iterable[int], invoice_id: str, tenant_id: str) -> int:
        """Attaches charges to an invoice. Returns how many charges changed."""
        ids = list(dict.fromkeys(charge_ids))
        with session_scope(self.DBSession) as session:
            charges = {
                charge.id: charge
                for charge in session.query(StorageCharge)
                .filter(StorageCharge.tenant_id == tenant_id, StorageCharge.id.in_(ids))
                .with_for_update()
            }
            missing = [charge_id for charge_id in ids if charge_id not in charges]
            if missing:
                raise NotFoundError("StorageCharge", missing[0])

            flipped = 0
            for charge_id in ids:
                charge = charges[charge_id]
                if charge.is_invoiced:
                    if charge.invoice_id != invoice_id:
                        raise InUseError(
                            "Storage charge is already attached to another invoice",
                            charge_id=charge_id,
                            invoice_id=charge.invoice_id,
                        )
                    continue
                charge.is_invoiced = True
                charge.invoice_id = invoice_id
                flipped += 1
            logger.info("Attached %d storage charges to invoice %s", flipped, invoice_id)
            return flipped

    # --- Helpers ---

    def _clean_policy(self, values: dict) -> dict:
        """Normalizes incoming policy fields; keys that are absent stay absent."""
        clean = dict(values)
        if 'free_days' in clean:
            clean['free_days'] = _whole_days(clean['free_days'])
        if 'daily_rate' in clean:
            clean['daily_rate'] = quantize_money(non_negative(clean['daily_rate'], 'daily_rate'),
                                                 self.settings.money_quantum)
        if 'currency' in clean:
            clean['currency'] = str(clean['currency']).strip().upper()
        if 'effective_from' in clean:
            clean['effective_from'] = parse_date(clean['effective_from'], 'effective_from')
        if clean.get('effective_until') is not None:
            clean['effective_until'] = parse_date(clean['effective_until'], 'effective_until')
        if 'is_active' in clean:
            clean['is_active'] = bool(clean['is_active'])
        return clean

    @staticmethod
    def _guard_policy_overlap(session, tenant_id: str, warehouse_id: int, values: dict,
                              exclude_id: Optional[int] = None) -> None:
        query = session.query(StoragePricing).filter_by(
            tenant_id=tenant_id, warehouse_id=warehouse_id, is_active=True)
        if exclude_id is not None:
            query = query.filter(StoragePricing.id != exclude_id)

        for policy in query.order_by(StoragePricing.effective_from, StoragePricing.id):
            if intervals_overlap(values['effective_from'], values['effective_until'],
                                 policy.effective_from, policy.effective_until):
                logger.warning("Storage policy window %s..%s overlaps policy %s",
                               values['effective_from'], values['effective_until'] or "open", policy.id)
                raise OverlapError(
                    policy.id,
                    "An active storage pricing policy already covers this date range",
                    warehouse_id=warehouse_id,
                )


def _whole_days(value) -> int:
    if isinstance(value, bool):
        raise InvalidRangeError("free_days must be a non-negative whole number", free_days=value)
    try:
        days = to_decimal(value, 'free_days')
    except InvalidRangeError:
        raise InvalidRangeError("free_days must be a non-negative whole number", free_days=value)
    if days < 0 or days != days.to_integral_value():
        raise InvalidRangeError("free_days must be a non-negative whole number", free_days=value)
    return int(days)
