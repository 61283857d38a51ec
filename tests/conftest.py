from datetime import date
from decimal import Decimal

import pytest

from db.setup import BinLocation, Package, Shipment, Warehouse, session_scope
from logiyard.config import Settings
from logiyard.controller import YardMaster

TENANT = "t1"
OPENED = date(2025, 1, 1)


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="sqlite://", log_level="DEBUG")


@pytest.fixture
def yard(tmp_path, settings):
    wm = YardMaster(f"sqlite:///{tmp_path / 'yard.db'}", settings)
    yield wm
    wm.dispose()


@pytest.fixture
def warehouse_id(yard) -> int:
    return add_warehouse(yard)


@pytest.fixture
def caribbean(yard) -> int:
    return yard.zones.create_zone(TENANT, "Caribbean", ["JM", "TT", "BB"]).id


# --- plain helpers for rows owned by the surrounding application ---

def add_warehouse(yard, tenant_id: str = TENANT, code: str = "MIA1") -> int:
    with session_scope(yard.DBSession) as session:
        warehouse = Warehouse(tenant_id=tenant_id, code=code, name=f"{code} hub", country_code="US")
        session.add(warehouse)
        session.flush()
        return warehouse.id


def add_package(yard, warehouse_id: int, weight: str = "1.0", tenant_id: str = TENANT) -> int:
    with session_scope(yard.DBSession) as session:
        package = Package(tenant_id=tenant_id, warehouse_id=warehouse_id,
                          tracking_number=f"TRK-{weight}", weight_kg=Decimal(weight))
        session.add(package)
        session.flush()
        return package.id


def add_bin(yard, warehouse_id: int, code: str, zone_name: str = "Standard",
            tenant_id: str = TENANT, **attrs) -> int:
    with session_scope(yard.DBSession) as session:
        bin_location = BinLocation(tenant_id=tenant_id, warehouse_id=warehouse_id,
                                   bin_code=code, zone_name=zone_name, **attrs)
        session.add(bin_location)
        session.flush()
        return bin_location.id


def add_shipment(yard, zone_id=None, rate_id=None, tenant_id: str = TENANT) -> int:
    with session_scope(yard.DBSession) as session:
        shipment = Shipment(tenant_id=tenant_id, zone_id=zone_id, rate_id=rate_id)
        session.add(shipment)
        session.flush()
        return shipment.id
