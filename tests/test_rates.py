import random
import threading
from datetime import date, timedelta
from decimal import Decimal

import pytest

from conftest import OPENED, TENANT, add_shipment, add_warehouse
from logiyard.algorithms import intervals_overlap
from logiyard.errors import InUseError, InvalidRangeError, NotFoundError, OverlapError


def _rate(yard, warehouse_id, zone_id, effective_from, effective_until=None, service_type="economy", **kw):
    return yard.rates.create_rate(TENANT, warehouse_id, zone_id, service_type,
                                  kw.pop("base_rate", "15"), kw.pop("per_kg_rate", "3"),
                                  kw.pop("min_charge", "25"), effective_from,
                                  effective_until=effective_until, **kw)


def test_second_rate_overlapping_open_window_is_rejected(yard, warehouse_id, caribbean):
    first = _rate(yard, warehouse_id, caribbean, "2025-01-01", "2025-06-30")

    with pytest.raises(OverlapError) as excinfo:
        _rate(yard, warehouse_id, caribbean, "2025-06-15", None)

    assert excinfo.value.conflicting_id == first.id
    assert excinfo.value.to_dict()["code"] == "RATE_OVERLAP"
    assert len(yard.rates.list_rates(TENANT)) == 1


def test_create_rejects_exactly_the_overlapping_windows(yard, warehouse_id):
    rng = random.Random(7)
    for n in range(25):
        zone_id = yard.zones.create_zone(TENANT, f"Zone {n}", ["JM"]).id
        a_from = OPENED + timedelta(days=rng.randint(0, 90))
        a_until = rng.choice([None, a_from + timedelta(days=rng.randint(1, 40))])
        b_from = OPENED + timedelta(days=rng.randint(0, 90))
        b_until = rng.choice([None, b_from + timedelta(days=rng.randint(1, 40))])

        _rate(yard, warehouse_id, zone_id, a_from, a_until)
        if intervals_overlap(b_from, b_until, a_from, a_until):
            with pytest.raises(OverlapError):
                _rate(yard, warehouse_id, zone_id, b_from, b_until)
        else:
            _rate(yard, warehouse_id, zone_id, b_from, b_until)


def test_adjacent_windows_and_other_scopes_coexist(yard, warehouse_id, caribbean):
    _rate(yard, warehouse_id, caribbean, "2025-01-01", "2025-06-30")
    _rate(yard, warehouse_id, caribbean, "2025-07-01")
    _rate(yard, warehouse_id, caribbean, "2025-01-01", service_type="express")
    other_warehouse = add_warehouse(yard, code="JFK1")
    _rate(yard, other_warehouse, caribbean, "2025-01-01")

    assert len(yard.rates.list_rates(TENANT, active_only=True)) == 4


def test_inactive_rates_never_conflict(yard, warehouse_id, caribbean):
    _rate(yard, warehouse_id, caribbean, "2025-01-01", is_active=False)
    rate = _rate(yard, warehouse_id, caribbean, "2025-01-01")

    assert rate.is_active


def test_reactivating_an_overlapping_rate_is_rejected(yard, warehouse_id, caribbean):
    dormant = _rate(yard, warehouse_id, caribbean, "2025-01-01", is_active=False)
    live = _rate(yard, warehouse_id, caribbean, "2025-03-01")

    with pytest.raises(OverlapError) as excinfo:
        yard.rates.update_rate(dormant.id, TENANT, is_active=True)
    assert excinfo.value.conflicting_id == live.id


def test_update_ignores_its_own_window(yard, warehouse_id, caribbean):
    rate = _rate(yard, warehouse_id, caribbean, "2025-01-01", "2025-06-30")

    updated = yard.rates.update_rate(rate.id, TENANT, effective_until="2025-12-31", base_rate="16.50")

    assert updated.effective_until == date(2025, 12, 31)
    assert updated.base_rate == Decimal("16.50")


def test_update_to_open_end_collides_with_successor(yard, warehouse_id, caribbean):
    current = _rate(yard, warehouse_id, caribbean, "2025-01-01", "2025-06-30")
    successor = _rate(yard, warehouse_id, caribbean, "2025-07-01")

    with pytest.raises(OverlapError) as excinfo:
        yard.rates.update_rate(current.id, TENANT, effective_until=None)
    assert excinfo.value.conflicting_id == successor.id


def test_update_errors(yard, warehouse_id, caribbean):
    rate = _rate(yard, warehouse_id, caribbean, "2025-01-01")

    with pytest.raises(NotFoundError):
        yard.rates.update_rate(9999, TENANT, base_rate="1")
    with pytest.raises(NotFoundError):
        yard.rates.update_rate(rate.id, "someone-else", base_rate="1")
    with pytest.raises(InvalidRangeError):
        yard.rates.update_rate(rate.id, TENANT, effective_until="2024-12-31")
    with pytest.raises(InvalidRangeError):
        yard.rates.update_rate(rate.id, TENANT, colour="red")


@pytest.mark.parametrize("bad", [
    {"effective_until": "2025-01-01"},
    {"service_type": "overnight"},
    {"base_rate": "-1"},
    {"per_kg_rate": "abc"},
])
def test_create_rejects_invalid_definitions(yard, warehouse_id, caribbean, bad):
    fields = {"effective_until": None}
    fields.update(bad)
    with pytest.raises(InvalidRangeError):
        yard.rates.create_rate(TENANT, warehouse_id, caribbean, fields.get("service_type", "economy"),
                               fields.get("base_rate", "15"), fields.get("per_kg_rate", "3"), "25",
                               "2025-01-01", effective_until=fields["effective_until"])


def test_create_requires_known_warehouse_and_zone(yard, warehouse_id, caribbean):
    with pytest.raises(NotFoundError) as excinfo:
        _rate(yard, 9999, caribbean, "2025-01-01")
    assert excinfo.value.resource == "Warehouse"

    with pytest.raises(NotFoundError) as excinfo:
        _rate(yard, warehouse_id, 9999, "2025-01-01")
    assert excinfo.value.resource == "Zone"


def test_amounts_are_stored_as_exact_decimals(yard, warehouse_id, caribbean):
    rate = _rate(yard, warehouse_id, caribbean, "2025-01-01", base_rate=0.1, per_kg_rate="2.675",
                 max_weight_kg="30")

    stored = yard.rates.get_rate(rate.id, TENANT)
    assert stored.base_rate == Decimal("0.10")
    assert stored.per_kg_rate == Decimal("2.68")
    assert stored.max_weight_kg == Decimal("30.000")
    assert stored.service_type == "economy"
    assert stored.currency_code == "USD"


def test_delete_rate(yard, warehouse_id, caribbean):
    rate = _rate(yard, warehouse_id, caribbean, "2025-01-01")

    assert yard.rates.delete_rate(rate.id, TENANT) is True
    assert yard.rates.delete_rate(rate.id, TENANT) is False
    assert yard.rates.get_rate(rate.id, TENANT) is None


def test_delete_refused_while_shipments_use_the_zone(yard, warehouse_id, caribbean):
    rate = _rate(yard, warehouse_id, caribbean, "2025-01-01")
    add_shipment(yard, zone_id=caribbean)

    with pytest.raises(InUseError):
        yard.rates.delete_rate(rate.id, TENANT)
    assert yard.rates.get_rate(rate.id, TENANT) is not None


def test_concurrent_overlapping_creates_admit_one(yard, warehouse_id, caribbean):
    barrier = threading.Barrier(4)
    outcomes = []

    def claim(n):
        barrier.wait()
        try:
            _rate(yard, warehouse_id, caribbean, OPENED + timedelta(days=n), base_rate=str(10 + n))
            outcomes.append("created")
        except OverlapError:
            outcomes.append("overlap")

    threads = [threading.Thread(target=claim, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["created", "overlap", "overlap", "overlap"]
    assert len(yard.rates.list_rates(TENANT, zone_id=caribbean, active_only=True)) == 1
