# logiyard/rates.py

import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import or_

from db.setup import Shipment, ShippingRate, Zone, session_scope
from logiyard.algorithms import (
    intervals_overlap,
    non_negative,
    parse_date,
    quantize_money,
    validate_window,
)
from logiyard.config import Settings, settings as default_settings
from logiyard.directory import require_warehouse
from logiyard.errors import InUseError, InvalidRangeError, NotFoundError, OverlapError

logger = logging.getLogger(__name__)

SERVICE_TYPES = ('economy', 'standard', 'express')
WEIGHT_QUANTUM = Decimal('0.001')

UPDATABLE_FIELDS = frozenset({
    'warehouse_id', 'zone_id', 'service_type', 'base_rate', 'per_kg_rate', 'min_charge',
    'max_weight_kg', 'currency_code', 'is_active', 'effective_from', 'effective_until',
})


def find_effective_rates(session, tenant_id: str, warehouse_id: int, zone_ids: Iterable[int],
                         on_date: date, service_type: Optional[str] = None,
                         weight_kg: Optional[Decimal] = None) -> List[ShippingRate]:
    """
    Active rates in the given zones whose window covers on_date and whose
    weight limit (if any) admits weight_kg, ordered by service type then
    base rate.
    """
    zone_ids = list(zone_ids)
    if not zone_ids:
        return []

    query = session.query(ShippingRate).filter(
        ShippingRate.tenant_id == tenant_id,
        ShippingRate.warehouse_id == warehouse_id,
        ShippingRate.zone_id.in_(zone_ids),
        ShippingRate.is_active.is_(True),
        ShippingRate.effective_from <= on_date,
        or_(ShippingRate.effective_until.is_(None), ShippingRate.effective_until >= on_date),
    )
    if service_type:
        query = query.filter(ShippingRate.service_type == service_type)

    # Amounts are stored as strings, so weight limits and ordering are applied here.
    rates = [
        rate for rate in query.all()
        if weight_kg is None or rate.max_weight_kg is None or rate.max_weight_kg >= weight_kg
    ]
    rates.sort(key=lambda rate: (rate.service_type, rate.base_rate, rate.id))
    return rates


class RateRepository:
    """
    Stores effective-dated shipping rates. For one (tenant, warehouse, zone,
    service type) no two active rates may cover the same day; every write
    re-checks that inside the transaction that performs it.
    """

    def __init__(self, session_factory, settings: Optional[Settings] = None):
        self.DBSession = session_factory
        self.settings = settings or default_settings

    # --- Reads ---

    def get_rate(self, rate_id: int, tenant_id: str) -> Optional[ShippingRate]:
        with session_scope(self.DBSession) as session:
            return session.query(ShippingRate).filter_by(id=rate_id, tenant_id=tenant_id).one_or_none()

    def list_rates(self, tenant_id: str, warehouse_id: Optional[int] = None,
                   zone_id: Optional[int] = None, active_only: bool = False) -> List[ShippingRate]:
        with session_scope(self.DBSession) as session:
            query = session.query(ShippingRate).filter_by(tenant_id=tenant_id)
            if warehouse_id is not None:
                query = query.filter_by(warehouse_id=warehouse_id)
            if zone_id is not None:
                query = query.filter_by(zone_id=zone_id)
            if active_only:
                query = query.filter_by(is_active=True)
            return query.order_by(ShippingRate.service_type, ShippingRate.effective_from).all()

    # --- Writes ---

    def create_rate(self, tenant_id: str, warehouse_id: int, zone_id: int, service_type: str,
                    base_rate, per_kg_rate, min_charge, effective_from,
                    effective_until=None, max_weight_kg=None,
                    currency_code: Optional[str] = None, is_active: bool = True) -> ShippingRate:
        values = self._clean({
            'warehouse_id': warehouse_id,
            'zone_id': zone_id,
            'service_type': service_type,
            'base_rate': base_rate,
            'per_kg_rate': per_kg_rate,
            'min_charge': min_charge,
            'max_weight_kg': max_weight_kg,
            'currency_code': currency_code or self.settings.default_currency,
            'is_active': is_active,
            'effective_from': effective_from,
            'effective_until': effective_until,
        })
        validate_window(values['effective_from'], values['effective_until'])

        with session_scope(self.DBSession) as session:
            require_warehouse(session, values['warehouse_id'], tenant_id)
            self._lock_zone(session, values['zone_id'], tenant_id)
            if values['is_active']:
                self._guard_overlap(session, tenant_id, values)

            rate = ShippingRate(tenant_id=tenant_id, **values)
            session.add(rate)
            session.flush()
            logger.info("Created rate %s for warehouse %s zone %s (%s) from %s until %s",
                        rate.id, rate.warehouse_id, rate.zone_id, rate.service_type,
                        rate.effective_from, rate.effective_until or "open")
            return rate

    def update_rate(self, rate_id: int, tenant_id: str, **patch) -> ShippingRate:
        """Applies the given fields. Passing effective_until=None makes the rate open-ended."""
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidRangeError("Unknown rate fields", fields=",".join(sorted(unknown)))
        changes = self._clean(patch)

        with session_scope(self.DBSession) as session:
            rate = session.query(ShippingRate).filter_by(id=rate_id, tenant_id=tenant_id).one_or_none()
            if rate is None:
                raise NotFoundError("Rate", rate_id)

            merged = {field: getattr(rate, field) for field in UPDATABLE_FIELDS}
            merged.update(changes)
            validate_window(merged['effective_from'], merged['effective_until'])

            if merged['warehouse_id'] != rate.warehouse_id:
                require_warehouse(session, merged['warehouse_id'], tenant_id)
            self._lock_zone(session, merged['zone_id'], tenant_id)
            if merged['is_active']:
                self._guard_overlap(session, tenant_id, merged, exclude_id=rate.id)

            for field, value in changes.items():
                setattr(rate, field, value)
            session.flush()
            logger.info("Updated rate %s: %s", rate.id, ", ".join(sorted(changes)) or "no changes")
            return rate

    def delete_rate(self, rate_id: int, tenant_id: str) -> bool:
        with session_scope(self.DBSession) as session:
            rate = (
                session.query(ShippingRate)
                .filter_by(id=rate_id, tenant_id=tenant_id)
                .with_for_update()
                .one_or_none()
            )
            if rate is None:
                return False

            shipment = (
                session.query(Shipment.id)
                .filter(or_(Shipment.zone_id == rate.zone_id, Shipment.rate_id == rate.id))
                .first()
            )
            if shipment is not None:
                logger.warning("Refused to delete rate %s: shipment %s uses it", rate_id, shipment.id)
                raise InUseError(
                    "Shipping rate cannot be deleted because it is being used by existing shipments",
                    rate_id=rate_id,
                    shipment_id=shipment.id,
                )

            session.delete(rate)
            logger.info("Deleted rate %s", rate_id)
            return True

    # --- Helpers ---

    def _clean(self, values: dict) -> dict:
        """Normalizes incoming field values; keys that are absent stay absent."""
        quantum = self.settings.money_quantum
        clean = dict(values)

        if 'service_type' in clean:
            service_type = str(clean['service_type']).strip().lower()
            if service_type not in SERVICE_TYPES:
                raise InvalidRangeError("Unknown service type", service_type=clean['service_type'])
            clean['service_type'] = service_type
        for field in ('base_rate', 'per_kg_rate', 'min_charge'):
            if field in clean:
                clean[field] = quantize_money(non_negative(clean[field], field), quantum)
        if clean.get('max_weight_kg') is not None:
            weight = non_negative(clean['max_weight_kg'], 'max_weight_kg')
            clean['max_weight_kg'] = weight.quantize(WEIGHT_QUANTUM)
        if 'currency_code' in clean:
            clean['currency_code'] = str(clean['currency_code']).strip().upper()
        if 'effective_from' in clean:
            clean['effective_from'] = parse_date(clean['effective_from'], 'effective_from')
        if clean.get('effective_until') is not None:
            clean['effective_until'] = parse_date(clean['effective_until'], 'effective_until')
        if 'is_active' in clean:
            clean['is_active'] = bool(clean['is_active'])
        return clean

    @staticmethod
    def _lock_zone(session, zone_id: int, tenant_id: str) -> Zone:
        """Serializes rate writes for one zone; concurrent writers queue on this row."""
        zone = (
            session.query(Zone)
            .filter_by(id=zone_id, tenant_id=tenant_id)
            .with_for_update()
            .one_or_none()
        )
        if zone is None:
            raise NotFoundError("Zone", zone_id)
        return zone

    @staticmethod
    def _guard_overlap(session, tenant_id: str, values: dict, exclude_id: Optional[int] = None) -> None:
        query = session.query(ShippingRate).filter(
            ShippingRate.tenant_id == tenant_id,
            ShippingRate.warehouse_id == values['warehouse_id'],
            ShippingRate.zone_id == values['zone_id'],
            ShippingRate.service_type == values['service_type'],
            ShippingRate.is_active.is_(True),
        )
        if exclude_id is not None:
            query = query.filter(ShippingRate.id != exclude_id)

        for existing in query.order_by(ShippingRate.effective_from, ShippingRate.id):
            if intervals_overlap(values['effective_from'], values['effective_until'],
                                 existing.effective_from, existing.effective_until):
                logger.warning("Rate window %s..%s overlaps active rate %s",
                               values['effective_from'], values['effective_until'] or "open",
                               existing.id)
                raise OverlapError(
                    existing.id,
                    "A shipping rate already exists for this warehouse, zone, service type, and date range",
                    existing_from=existing.effective_from,
                    existing_until=existing.effective_until,
                )
