# logiyard/bins.py

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from db.setup import BinLocation, PackageBinAssignment, session_scope
from logiyard.algorithms import has_room, non_negative, utilization_percent
from logiyard.directory import require_package
from logiyard.errors import (
    AlreadyAssignedError,
    CapacityExceededError,
    InvalidRangeError,
    NotFoundError,
    UnavailableError,
)
from logiyard.models import BinAvailability, WarehouseCapacity, ZoneCapacity

logger = logging.getLogger(__name__)


def count_active_assignments(session, bin_ids: Iterable[int]) -> Dict[int, int]:
    """Occupancy per bin, counted from open assignment rows."""
    bin_ids = list(bin_ids)
    if not bin_ids:
        return {}
    rows = (
        session.query(PackageBinAssignment.bin_id, func.count(PackageBinAssignment.id))
        .filter(
            PackageBinAssignment.bin_id.in_(bin_ids),
            PackageBinAssignment.removed_at.is_(None),
        )
        .group_by(PackageBinAssignment.bin_id)
        .all()
    )
    counts = {bin_id: 0 for bin_id in bin_ids}
    counts.update({bin_id: count for bin_id, count in rows})
    return counts


def _availability(bin_location: BinLocation, current_count: int) -> BinAvailability:
    return BinAvailability(
        bin_location,
        current_count,
        utilization_percent(current_count, bin_location.max_capacity),
    )


class BinCapacityTracker:
    """
    Places packages into storage bins and takes them out again.

    A package moves Unassigned -> Assigned -> Removed, and can start a new
    Assigned -> Removed cycle later, but never holds two open assignments.
    Occupancy is never stored: it is the number of open assignment rows,
    counted in the same transaction that admits a new package.
    """

    def __init__(self, session_factory):
        self.DBSession = session_factory

    # ====================================================================
    # ASSIGNMENT LIFECYCLE
    # ====================================================================

    def assign(self, package_id: int, bin_id: int, reason: Optional[str] = None,
               actor: Optional[str] = None, notes: Optional[str] = None) -> PackageBinAssignment:
        with session_scope(self.DBSession) as session:
            require_package(session, package_id)

            # Lock the bin row first so the capacity check and the insert are one step.
            bin_location = (
                session.query(BinLocation)
                .filter_by(id=bin_id)
                .with_for_update()
                .one_or_none()
            )
            if bin_location is None:
                raise NotFoundError("Bin", bin_id)
            if not bin_location.is_active or not bin_location.is_available:
                raise UnavailableError(bin_id)

            current = (
                session.query(PackageBinAssignment)
                .filter_by(package_id=package_id, removed_at=None)
                .first()
            )
            if current is not None:
                raise AlreadyAssignedError(package_id, current.bin_id)

            if bin_location.max_capacity is not None:
                occupancy = count_active_assignments(session, [bin_id])[bin_id]
                if not has_room(occupancy, bin_location.max_capacity):
                    logger.warning("Bin %s full (%d/%d); package %s refused",
                                   bin_id, occupancy, bin_location.max_capacity, package_id)
                    raise CapacityExceededError(bin_id, bin_location.max_capacity)

            assignment = PackageBinAssignment(
                package_id=package_id,
                bin_id=bin_id,
                assigned_at=datetime.now(),
                assigned_by=actor,
                assignment_reason=reason or 'Manual assignment',
                notes=notes,
            )
            session.add(assignment)
            try:
                session.flush()
            except IntegrityError:
                # Another transaction opened an assignment for this package first.
                raise AlreadyAssignedError(package_id)

            logger.info("ASSIGNED: package %s -> bin %s (%s)", package_id, bin_location.bin_code, bin_id)
            return assignment

    def remove(self, package_id: Optional[int] = None, assignment_id: Optional[int] = None,
               reason: Optional[str] = None, actor: Optional[str] = None,
               notes: Optional[str] = None) -> bool:
        """Closes the open assignment. Returns False when there is none."""
        if assignment_id is None and package_id is None:
            raise InvalidRangeError("Either assignment_id or package_id must be provided")

        with session_scope(self.DBSession) as session:
            query = session.query(PackageBinAssignment).filter(PackageBinAssignment.removed_at.is_(None))
            if assignment_id is not None:
                query = query.filter(PackageBinAssignment.id == assignment_id)
            else:
                query = query.filter(PackageBinAssignment.package_id == package_id)

            assignment = query.with_for_update().first()
            if assignment is None:
                return False

            assignment.removed_at = datetime.now()
            assignment.removed_by = actor
            assignment.removal_reason = reason or 'Manual removal'
            assignment.notes = f"{notes} (Removed)" if notes else 'Removed'
            logger.info("REMOVED: package %s from bin %s", assignment.package_id, assignment.bin_id)
            return True

    def get_active_assignment(self, package_id: int) -> Optional[PackageBinAssignment]:
        with session_scope(self.DBSession) as session:
            return (
                session.query(PackageBinAssignment)
                .filter_by(package_id=package_id, removed_at=None)
                .first()
            )

    def get_assignment_history(self, package_id: int) -> List[PackageBinAssignment]:
        with session_scope(self.DBSession) as session:
            return (
                session.query(PackageBinAssignment)
                .filter_by(package_id=package_id)
                .order_by(PackageBinAssignment.assigned_at, PackageBinAssignment.id)
                .all()
            )

    # ====================================================================
    # AVAILABILITY
    # ====================================================================

    def get_available_bins(self, warehouse_id: int, zone_name: Optional[str] = None,
                           min_capacity: Optional[int] = None, weight_kg=None,
                           is_climate_controlled: Optional[bool] = None,
                           is_secured: Optional[bool] = None) -> List[BinAvailability]:
        """Active, available bins with room left, ordered by zone then bin code."""
        weight = non_negative(weight_kg, 'weight_kg') if weight_kg is not None else None

        with session_scope(self.DBSession) as session:
            query = session.query(BinLocation).filter(
                BinLocation.warehouse_id == warehouse_id,
                BinLocation.is_active.is_(True),
                BinLocation.is_available.is_(True),
            )
            if zone_name:
                query = query.filter(BinLocation.zone_name == zone_name)
            if is_climate_controlled is not None:
                query = query.filter(BinLocation.is_climate_controlled.is_(is_climate_controlled))
            if is_secured is not None:
                query = query.filter(BinLocation.is_secured.is_(is_secured))

            bins = query.order_by(BinLocation.zone_name, BinLocation.bin_code).all()
            counts = count_active_assignments(session, [b.id for b in bins])

        available = []
        for bin_location in bins:
            count = counts[bin_location.id]
            if not has_room(count, bin_location.max_capacity):
                continue
            if min_capacity and bin_location.max_capacity is not None and bin_location.max_capacity < min_capacity:
                continue
            if weight is not None and bin_location.max_weight_kg is not None and bin_location.max_weight_kg < weight:
                continue
            available.append(_availability(bin_location, count))
        return available

    def find_best_available_bin(self, warehouse_id: int, weight_kg=None, is_fragile: bool = False,
                                is_high_value: bool = False,
                                preferred_zone: Optional[str] = None) -> Optional[BinAvailability]:
        """
        Suggests a bin for a package. High-value packages want a secured
        bin, fragile ones a climate-controlled bin. When nothing matches,
        climate control is dropped first, then security (never for
        high-value packages), then the preferred zone.
        """
        filters = {'weight_kg': weight_kg}
        if is_high_value:
            filters['is_secured'] = True
        if is_fragile:
            filters['is_climate_controlled'] = True
        if preferred_zone:
            filters['zone_name'] = preferred_zone

        candidates = self.get_available_bins(warehouse_id, **filters)

        if not candidates and filters.get('is_climate_controlled'):
            del filters['is_climate_controlled']
            candidates = self.get_available_bins(warehouse_id, **filters)
        if not candidates and filters.get('is_secured') and not is_high_value:
            del filters['is_secured']
            candidates = self.get_available_bins(warehouse_id, **filters)
        if not candidates and preferred_zone:
            del filters['zone_name']
            candidates = self.get_available_bins(warehouse_id, **filters)

        if not candidates:
            return None

        def preference(candidate: BinAvailability):
            room = candidate.available_capacity
            return (
                not (is_high_value and candidate.is_secured),
                not (is_fragile and candidate.is_climate_controlled),
                room is not None,  # unlimited bins first
                -(room or 0),
            )

        return min(candidates, key=preference)

    def get_warehouse_capacity(self, warehouse_id: int) -> Optional[WarehouseCapacity]:
        with session_scope(self.DBSession) as session:
            bins = (
                session.query(BinLocation)
                .filter_by(warehouse_id=warehouse_id)
                .order_by(BinLocation.zone_name, BinLocation.bin_code)
                .all()
            )
            if not bins:
                return None
            counts = count_active_assignments(session, [b.id for b in bins])

        grouped: "OrderedDict[str, List[BinAvailability]]" = OrderedDict()
        for bin_location in bins:
            grouped.setdefault(bin_location.zone_name, []).append(
                _availability(bin_location, counts[bin_location.id])
            )

        zones = []
        for zone_name, members in grouped.items():
            total = sum(b.max_capacity or 0 for b in members)
            used = sum(b.current_count for b in members)
            zones.append(ZoneCapacity(zone_name, members, utilization_percent(used, total)))

        total_capacity = sum(z.total_capacity for z in zones)
        total_used = sum(z.used_capacity for z in zones)
        return WarehouseCapacity(warehouse_id, zones, utilization_percent(total_used, total_capacity))
