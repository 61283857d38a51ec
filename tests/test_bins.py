import random
import threading
from decimal import Decimal

import pytest

from conftest import add_bin, add_package
from db.setup import PackageBinAssignment, session_scope
from logiyard.bins import count_active_assignments
from logiyard.errors import (
    AlreadyAssignedError,
    CapacityExceededError,
    InvalidRangeError,
    NotFoundError,
    UnavailableError,
)


def _packages(yard, warehouse_id, n):
    return [add_package(yard, warehouse_id, weight=f"{i + 1}.0") for i in range(n)]


def _run_concurrently(target, args_list):
    barrier = threading.Barrier(len(args_list))
    outcomes = []

    def worker(*args):
        barrier.wait()
        try:
            target(*args)
            outcomes.append("ok")
        except (CapacityExceededError, AlreadyAssignedError) as e:
            outcomes.append(e.code)

    threads = [threading.Thread(target=worker, args=args) for args in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


def test_single_slot_bin_cycle(yard, warehouse_id):
    bin_id = add_bin(yard, warehouse_id, "A01", max_capacity=1)
    first, second = _packages(yard, warehouse_id, 2)

    assignment = yard.bins.assign(first, bin_id, reason="Inbound", actor="clerk")
    assert assignment.removed_at is None
    assert assignment.assigned_by == "clerk"

    with pytest.raises(CapacityExceededError) as excinfo:
        yard.bins.assign(second, bin_id)
    assert excinfo.value.max_capacity == 1

    assert yard.bins.remove(package_id=first, reason="Outbound") is True
    assert yard.bins.assign(second, bin_id).bin_id == bin_id


def test_concurrent_assigns_for_the_last_slot(yard, warehouse_id):
    bin_id = add_bin(yard, warehouse_id, "A01", max_capacity=1)
    packages = _packages(yard, warehouse_id, 6)

    outcomes = _run_concurrently(yard.bins.assign, [(p, bin_id) for p in packages])

    assert outcomes.count("ok") == 1
    assert outcomes.count("CAPACITY_EXCEEDED") == 5
    with session_scope(yard.DBSession) as session:
        assert count_active_assignments(session, [bin_id])[bin_id] == 1


def test_concurrent_assigns_of_one_package(yard, warehouse_id):
    bins = [add_bin(yard, warehouse_id, f"B{n:02d}", max_capacity=5) for n in range(4)]
    (package_id,) = _packages(yard, warehouse_id, 1)

    outcomes = _run_concurrently(yard.bins.assign, [(package_id, b) for b in bins])

    assert outcomes.count("ok") == 1
    assert outcomes.count("ALREADY_ASSIGNED") == 3


def test_capacity_holds_over_random_assign_and_remove(yard, warehouse_id):
    rng = random.Random(42)
    bins = {add_bin(yard, warehouse_id, f"R{n}", max_capacity=cap): cap for n, cap in enumerate((1, 2, 3))}
    packages = _packages(yard, warehouse_id, 8)

    for _ in range(60):
        package_id = rng.choice(packages)
        if rng.random() < 0.6:
            try:
                yard.bins.assign(package_id, rng.choice(list(bins)))
            except (CapacityExceededError, AlreadyAssignedError):
                pass
        else:
            yard.bins.remove(package_id=package_id)

        with session_scope(yard.DBSession) as session:
            counts = count_active_assignments(session, bins)
            open_rows = (
                session.query(PackageBinAssignment.package_id)
                .filter(PackageBinAssignment.removed_at.is_(None))
                .all()
            )
        assert all(counts[b] <= cap for b, cap in bins.items())
        assert len(open_rows) == len({row.package_id for row in open_rows})


def test_package_cannot_occupy_two_bins(yard, warehouse_id):
    first_bin = add_bin(yard, warehouse_id, "A01", max_capacity=5)
    second_bin = add_bin(yard, warehouse_id, "A02")
    (package_id,) = _packages(yard, warehouse_id, 1)
    yard.bins.assign(package_id, first_bin)

    with pytest.raises(AlreadyAssignedError) as excinfo:
        yard.bins.assign(package_id, second_bin)
    assert excinfo.value.bin_id == first_bin


@pytest.mark.parametrize("flags", [{"is_active": False}, {"is_available": False}])
def test_unavailable_bins_refuse_packages(yard, warehouse_id, flags):
    bin_id = add_bin(yard, warehouse_id, "X01", **flags)
    (package_id,) = _packages(yard, warehouse_id, 1)

    with pytest.raises(UnavailableError):
        yard.bins.assign(package_id, bin_id)


def test_assign_unknown_package_or_bin(yard, warehouse_id):
    bin_id = add_bin(yard, warehouse_id, "A01")
    (package_id,) = _packages(yard, warehouse_id, 1)

    with pytest.raises(NotFoundError) as excinfo:
        yard.bins.assign(9999, bin_id)
    assert excinfo.value.resource == "Package"
    with pytest.raises(NotFoundError) as excinfo:
        yard.bins.assign(package_id, 9999)
    assert excinfo.value.resource == "Bin"


def test_remove_by_assignment_and_history(yard, warehouse_id):
    bin_id = add_bin(yard, warehouse_id, "A01")
    (package_id,) = _packages(yard, warehouse_id, 1)
    first = yard.bins.assign(package_id, bin_id)

    assert yard.bins.remove(assignment_id=first.id, actor="clerk", notes="Picked") is True
    assert yard.bins.remove(assignment_id=first.id) is False
    assert yard.bins.remove(package_id=package_id) is False
    assert yard.bins.get_active_assignment(package_id) is None

    yard.bins.assign(package_id, bin_id)
    history = yard.bins.get_assignment_history(package_id)
    assert len(history) == 2
    assert history[0].removed_by == "clerk"
    assert history[0].notes == "Picked (Removed)"
    assert history[0].removal_reason == "Manual removal"
    assert history[1].removed_at is None

    with pytest.raises(InvalidRangeError):
        yard.bins.remove()


def test_available_bins(yard, warehouse_id):
    full = add_bin(yard, warehouse_id, "A01", max_capacity=1)
    partly = add_bin(yard, warehouse_id, "A02", max_capacity=3)
    add_bin(yard, warehouse_id, "BULK", zone_name="Overflow")
    add_bin(yard, warehouse_id, "OFF", is_available=False)
    first, second = _packages(yard, warehouse_id, 2)
    yard.bins.assign(first, full)
    yard.bins.assign(second, partly)

    bins = yard.bins.get_available_bins(warehouse_id)

    assert [b.bin_code for b in bins] == ["BULK", "A02"]
    bulk, a02 = bins
    assert bulk.available_capacity is None
    assert bulk.utilization_percent == 0
    assert a02.current_count == 1
    assert a02.available_capacity == 2
    assert a02.utilization_percent == 33
    assert a02.to_dict()["daily_premium"] == "0.00"


def test_available_bin_filters(yard, warehouse_id):
    add_bin(yard, warehouse_id, "S01", max_capacity=2, max_weight_kg=Decimal("10"))
    add_bin(yard, warehouse_id, "C01", zone_name="Cold", max_capacity=20, is_climate_controlled=True)

    assert [b.bin_code for b in yard.bins.get_available_bins(warehouse_id, min_capacity=5)] == ["C01"]
    assert [b.bin_code for b in yard.bins.get_available_bins(warehouse_id, weight_kg="12")] == ["C01"]
    assert [b.bin_code for b in yard.bins.get_available_bins(warehouse_id, zone_name="Standard")] == ["S01"]
    assert [b.bin_code for b in yard.bins.get_available_bins(
        warehouse_id, is_climate_controlled=True)] == ["C01"]


def test_best_bin_prefers_secured_for_high_value(yard, warehouse_id):
    add_bin(yard, warehouse_id, "A01", max_capacity=50)
    vault = add_bin(yard, warehouse_id, "V01", zone_name="Vault", max_capacity=2, is_secured=True)

    assert yard.bins.find_best_available_bin(warehouse_id, is_high_value=True).bin_id == vault


def test_best_bin_relaxes_climate_but_not_security(yard, warehouse_id):
    add_bin(yard, warehouse_id, "A01", max_capacity=5)
    add_bin(yard, warehouse_id, "A02", max_capacity=50)

    assert yard.bins.find_best_available_bin(warehouse_id, is_fragile=True).bin_code == "A02"
    assert yard.bins.find_best_available_bin(warehouse_id, is_high_value=True) is None


def test_best_bin_falls_back_from_preferred_zone(yard, warehouse_id):
    add_bin(yard, warehouse_id, "A01", max_capacity=5)
    add_bin(yard, warehouse_id, "BULK", zone_name="Overflow")

    assert yard.bins.find_best_available_bin(warehouse_id, preferred_zone="Nowhere").bin_code == "BULK"
    assert yard.bins.find_best_available_bin(warehouse_id, preferred_zone="Standard").bin_code == "A01"


def test_warehouse_capacity_report(yard, warehouse_id):
    a01 = add_bin(yard, warehouse_id, "A01", max_capacity=1)
    add_bin(yard, warehouse_id, "A02", max_capacity=3)
    add_bin(yard, warehouse_id, "P01", zone_name="Premium", max_capacity=4)
    (package_id,) = _packages(yard, warehouse_id, 1)
    yard.bins.assign(package_id, a01)

    report = yard.bins.get_warehouse_capacity(warehouse_id)

    assert [z.zone_name for z in report.zones] == ["Premium", "Standard"]
    premium, standard = report.zones
    assert (standard.total_capacity, standard.used_capacity, standard.utilization_percent) == (4, 1, 25)
    assert standard.occupied_bins == 1
    assert premium.available_capacity == 4
    assert (report.total_capacity, report.total_used, report.utilization_percent) == (8, 1, 13)
    assert report.to_dict()["zones"][1]["bins"][0]["is_at_capacity"] is True


def test_warehouse_without_bins_has_no_report(yard, warehouse_id):
    assert yard.bins.get_warehouse_capacity(warehouse_id) is None


def test_directory_lookups(yard, warehouse_id):
    (package_id,) = _packages(yard, warehouse_id, 1)

    assert yard.directory.get_package(package_id).weight_kg == Decimal("1.0")
    assert yard.directory.get_package(9999) is None
    assert yard.directory.get_warehouse(warehouse_id, "t1").code == "MIA1"
    assert yard.directory.get_warehouse(warehouse_id, "t2") is None
