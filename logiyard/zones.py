# logiyard/zones.py

import logging
from typing import Iterable, List, Optional

from sqlalchemy import or_

from db.setup import Shipment, ShippingRate, Zone, ZoneCountry, session_scope
from logiyard.algorithms import normalize_country_code
from logiyard.errors import InUseError, InvalidRangeError, NotFoundError

logger = logging.getLogger(__name__)


def find_zones(session, country_code: str, tenant_id: str) -> List[Zone]:
    """Every active zone of the tenant whose member set contains the country."""
    code = normalize_country_code(country_code)
    return (
        session.query(Zone)
        .join(ZoneCountry, ZoneCountry.zone_id == Zone.id)
        .filter(
            Zone.tenant_id == tenant_id,
            Zone.is_active.is_(True),
            ZoneCountry.country_code == code,
        )
        .order_by(Zone.id)
        .all()
    )


class ZoneResolver:
    """
    Maps destination countries to shipping zones and owns the zone lifecycle.
    A country may sit in several zones; the resolver returns all of them and
    leaves the choice to the caller.
    """

    def __init__(self, session_factory):
        self.DBSession = session_factory

    def resolve_zones(self, country_code: str, tenant_id: str) -> List[int]:
        with session_scope(self.DBSession) as session:
            zones = find_zones(session, country_code, tenant_id)
        logger.debug("Country %s resolved to zones %s", country_code, [z.id for z in zones])
        return [zone.id for zone in zones]

    def get_zone(self, zone_id: int, tenant_id: str) -> Optional[Zone]:
        with session_scope(self.DBSession) as session:
            return session.query(Zone).filter_by(id=zone_id, tenant_id=tenant_id).one_or_none()

    def create_zone(self, tenant_id: str, name: str, country_codes: Iterable[str] = (),
                    description: Optional[str] = None, is_active: bool = True) -> Zone:
        codes = _unique_codes(country_codes)
        with session_scope(self.DBSession) as session:
            zone = Zone(tenant_id=tenant_id, name=name, description=description, is_active=is_active)
            zone.countries = [ZoneCountry(country_code=code) for code in codes]
            session.add(zone)
            session.flush()
            logger.info("Created zone %s (%s) with %d countries", zone.id, name, len(codes))
            return zone

    def set_countries(self, zone_id: int, tenant_id: str, country_codes: Iterable[str]) -> Zone:
        """Replaces the member set; codes already present keep their rows."""
        wanted = _unique_codes(country_codes)
        with session_scope(self.DBSession) as session:
            zone = session.query(Zone).filter_by(id=zone_id, tenant_id=tenant_id).one_or_none()
            if zone is None:
                raise NotFoundError("Zone", zone_id)

            for member in list(zone.countries):
                if member.country_code not in wanted:
                    zone.countries.remove(member)
            present = {member.country_code for member in zone.countries}
            for code in wanted:
                if code not in present:
                    zone.countries.append(ZoneCountry(country_code=code))
            session.flush()
            return zone

    def update_zone(self, zone_id: int, tenant_id: str, name: Optional[str] = None,
                    description: Optional[str] = None, is_active: Optional[bool] = None) -> Zone:
        """Renames, re-describes or (de)activates a zone; None leaves a field as it is."""
        with session_scope(self.DBSession) as session:
            zone = session.query(Zone).filter_by(id=zone_id, tenant_id=tenant_id).one_or_none()
            if zone is None:
                raise NotFoundError("Zone", zone_id)

            if name is not None:
                if not name.strip():
                    raise InvalidRangeError("Zone name must not be empty", zone_id=zone_id)
                zone.name = name.strip()
            if description is not None:
                zone.description = description
            if is_active is not None:
                zone.is_active = bool(is_active)
            session.flush()
            logger.info("Updated zone %s (%s, active=%s)", zone.id, zone.name, zone.is_active)
            return zone

    def delete_zone(self, zone_id: int, tenant_id: str) -> bool:
        with session_scope(self.DBSession) as session:
            zone = (
                session.query(Zone)
                .filter_by(id=zone_id, tenant_id=tenant_id)
                .with_for_update()
                .one_or_none()
            )
            if zone is None:
                return False

            active_rate = (
                session.query(ShippingRate.id)
                .filter_by(zone_id=zone_id, is_active=True)
                .first()
            )
            if active_rate is not None:
                logger.warning("Refused to delete zone %s: active rate %s", zone_id, active_rate.id)
                raise InUseError(
                    "Zone cannot be deleted because it has active shipping rates",
                    zone_id=zone_id,
                    rate_id=active_rate.id,
                )

            rate_ids = [row.id for row in session.query(ShippingRate.id).filter_by(zone_id=zone_id)]
            shipment = (
                session.query(Shipment.id)
                .filter(or_(Shipment.zone_id == zone_id, Shipment.rate_id.in_(rate_ids)))
                .first()
            )
            if shipment is not None:
                raise InUseError(
                    "Zone cannot be deleted because shipments reference it",
                    zone_id=zone_id,
                    shipment_id=shipment.id,
                )

            retired = (
                session.query(ShippingRate)
                .filter_by(zone_id=zone_id, is_active=False)
                .delete(synchronize_session=False)
            )
            session.delete(zone)
            logger.info("Deleted zone %s and %d inactive rates", zone_id, retired)
            return True


def _unique_codes(country_codes: Iterable[str]) -> List[str]:
    codes = []
    for raw in country_codes:
        code = normalize_country_code(raw)
        if code not in codes:
            codes.append(code)
    return codes
