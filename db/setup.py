import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import NullPool
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)

# 1. Database Configuration and Base
DATABASE_URL = "sqlite:///warehouse.db"
Base = declarative_base()


class DecimalString(TypeDecorator):
    """Stores a Decimal as its exact string form.

    Money and weights never pass through a binary float on the way in or
    out of the store. Floats are rejected outright.
    """

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError(f"Refusing to persist float {value!r}; use Decimal or str")
        return str(Decimal(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


# 2. Table Definitions (Declarative Base)

class Warehouse(Base):
    """Tenant-owned warehouse; the scope for rates, bins and storage pricing."""
    __tablename__ = 'warehouses'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    code = Column(String(20), nullable=False)
    name = Column(String(255), nullable=False)
    country_code = Column(String(2), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class Zone(Base):
    """Named group of destination countries."""
    __tablename__ = 'zones'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    countries = relationship('ZoneCountry', cascade='all, delete-orphan', lazy='selectin')


class ZoneCountry(Base):
    __tablename__ = 'zone_countries'
    __table_args__ = (UniqueConstraint('zone_id', 'country_code'),)

    id = Column(Integer, primary_key=True)
    zone_id = Column(Integer, ForeignKey('zones.id', ondelete='CASCADE'), nullable=False)
    country_code = Column(String(2), nullable=False, index=True)


class ShippingRate(Base):
    """Effective-dated price for one (warehouse, zone, service type)."""
    __tablename__ = 'shipping_rates'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    warehouse_id = Column(Integer, ForeignKey('warehouses.id'), nullable=False)
    zone_id = Column(Integer, ForeignKey('zones.id'), nullable=False)
    service_type = Column(String(20), nullable=False)
    base_rate = Column(DecimalString, nullable=False)
    per_kg_rate = Column(DecimalString, nullable=False)
    min_charge = Column(DecimalString, nullable=False)
    max_weight_kg = Column(DecimalString, nullable=True)
    currency_code = Column(String(3), default='USD', nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    effective_from = Column(Date, nullable=False)
    effective_until = Column(Date, nullable=True)  # NULL means open-ended
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    zone = relationship('Zone', lazy='joined', innerjoin=True)

    __table_args__ = (
        Index('ix_rates_scope', 'tenant_id', 'warehouse_id', 'zone_id', 'service_type'),
    )


class Shipment(Base):
    """Outbound shipment. Only the columns the engine checks references against."""
    __tablename__ = 'shipments'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    zone_id = Column(Integer, ForeignKey('zones.id'), nullable=True, index=True)
    rate_id = Column(Integer, ForeignKey('shipping_rates.id'), nullable=True)
    status = Column(String(30), default='DRAFT', nullable=False)


class Package(Base):
    """Defines the current state of a package in the warehouse."""
    __tablename__ = 'packages'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    warehouse_id = Column(Integer, ForeignKey('warehouses.id'), nullable=True)
    tracking_number = Column(String(64), nullable=False)
    status = Column(String(30), default='RECEIVED', nullable=False)
    weight_kg = Column(DecimalString, nullable=True)


class StoragePricing(Base):
    """Free-day allowance and daily rate for a warehouse over an effective window."""
    __tablename__ = 'storage_pricing'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    warehouse_id = Column(Integer, ForeignKey('warehouses.id'), nullable=False, index=True)
    free_days = Column(Integer, default=7, nullable=False)
    daily_rate = Column(DecimalString, default='2.00', nullable=False)
    currency = Column(String(3), default='USD', nullable=False)
    effective_from = Column(Date, nullable=False)
    effective_until = Column(Date, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)


class BinLocation(Base):
    """Defines the master data for physical storage bins.

    Occupancy is not stored here; it is always counted from the active
    rows in package_bin_assignments.
    """
    __tablename__ = 'bin_locations'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    warehouse_id = Column(Integer, ForeignKey('warehouses.id'), nullable=False, index=True)
    bin_code = Column(String(20), nullable=False)
    zone_name = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    max_capacity = Column(Integer, nullable=True)  # package count; NULL is unlimited
    max_weight_kg = Column(DecimalString, nullable=True)
    daily_premium = Column(DecimalString, default='0.00', nullable=False)
    currency = Column(String(3), default='USD', nullable=False)
    is_climate_controlled = Column(Boolean, default=False, nullable=False)
    is_secured = Column(Boolean, default=False, nullable=False)
    is_accessible = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)


class PackageBinAssignment(Base):
    """One stay of a package in a bin. removed_at NULL means the package is still there."""
    __tablename__ = 'package_bin_assignments'

    id = Column(Integer, primary_key=True)
    package_id = Column(Integer, ForeignKey('packages.id'), nullable=False)
    bin_id = Column(Integer, ForeignKey('bin_locations.id'), nullable=False, index=True)
    assigned_at = Column(DateTime, default=datetime.now, nullable=False)
    assigned_by = Column(String(64), nullable=True)
    removed_at = Column(DateTime, nullable=True)
    removed_by = Column(String(64), nullable=True)
    assignment_reason = Column(String(100), nullable=True)
    removal_reason = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    bin = relationship('BinLocation', lazy='joined', innerjoin=True)

    __table_args__ = (
        # At most one open assignment per package.
        Index(
            'uq_package_active_assignment',
            'package_id',
            unique=True,
            sqlite_where=removed_at.is_(None),
            postgresql_where=removed_at.is_(None),
        ),
    )


class StorageCharge(Base):
    """Computed storage fee for one package over [charge_from_date, charge_to_date)."""
    __tablename__ = 'storage_charges'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    package_id = Column(Integer, ForeignKey('packages.id'), nullable=False, index=True)
    charge_from_date = Column(Date, nullable=False)
    charge_to_date = Column(Date, nullable=False)
    total_days = Column(Integer, nullable=False)
    days_charged = Column(Integer, nullable=False)
    free_days_applied = Column(Integer, default=0, nullable=False)
    daily_rate = Column(DecimalString, nullable=False)
    daily_premium = Column(DecimalString, default='0.00', nullable=False)
    base_storage_fee = Column(DecimalString, nullable=False)
    bin_location_fee = Column(DecimalString, default='0.00', nullable=False)
    total_storage_fee = Column(DecimalString, nullable=False)
    currency = Column(String(3), default='USD', nullable=False)
    bin_location_id = Column(Integer, ForeignKey('bin_locations.id'), nullable=True)
    is_invoiced = Column(Boolean, default=False, nullable=False)
    invoice_id = Column(String(64), nullable=True)
    calculated_at = Column(DateTime, default=datetime.now, nullable=False)
    calculated_by = Column(String(64), nullable=True)
    notes = Column(Text, nullable=True)


# 3. Engine and Session Helpers

def make_engine(url: str = DATABASE_URL, busy_timeout: float = 30.0):
    """Creates an engine whose transactions are safe for check-then-write.

    SQLite gets BEGIN IMMEDIATE so the write lock is taken before the first
    read of a transaction; pysqlite's own deferred BEGIN is switched off.
    Pooling is disabled for SQLite to avoid 'database is locked' errors.
    """
    if not url.startswith('sqlite'):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(url, poolclass=NullPool, connect_args={'timeout': busy_timeout})

    @event.listens_for(engine, 'connect')
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute('PRAGMA foreign_keys=ON')

    @event.listens_for(engine, 'begin')
    def _begin_immediate(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')

    return engine


def make_session_factory(engine):
    # Results are handed back after the session closes.
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(session_factory):
    """One transaction: commit on success, roll back and re-raise on error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# 4. Setup and Seeding Functions

def initialize_db(engine=None, seed=True):
    """Creates the database tables and seeds the initial data."""
    if engine is None:
        engine = make_engine(DATABASE_URL)
    Base.metadata.create_all(engine)

    Session = make_session_factory(engine)
    if seed:
        with session_scope(Session) as session:
            already_seeded = session.query(Warehouse).count() > 0
        if not already_seeded:
            seed_data(Session)
    return engine


def seed_data(Session, tenant_id='demo'):
    """Inserts a small working configuration: one warehouse, zones, rates, pricing and bins."""
    with session_scope(Session) as session:
        warehouse = Warehouse(tenant_id=tenant_id, code='MIA1', name='Miami Hub', country_code='US')
        session.add(warehouse)
        session.flush()

        caribbean = Zone(tenant_id=tenant_id, name='Caribbean')
        caribbean.countries = [ZoneCountry(country_code=c) for c in ('JM', 'TT', 'BB', 'BS')]
        europe = Zone(tenant_id=tenant_id, name='Western Europe')
        europe.countries = [ZoneCountry(country_code=c) for c in ('GB', 'FR', 'DE', 'NL')]
        session.add_all([caribbean, europe])
        session.flush()

        opened = date(2025, 1, 1)
        session.add_all([
            ShippingRate(tenant_id=tenant_id, warehouse_id=warehouse.id, zone_id=caribbean.id,
                         service_type='economy', base_rate=Decimal('15.00'), per_kg_rate=Decimal('3.00'),
                         min_charge=Decimal('25.00'), effective_from=opened),
            ShippingRate(tenant_id=tenant_id, warehouse_id=warehouse.id, zone_id=caribbean.id,
                         service_type='express', base_rate=Decimal('20.00'), per_kg_rate=Decimal('5.00'),
                         min_charge=Decimal('10.00'), max_weight_kg=Decimal('30'), effective_from=opened),
            ShippingRate(tenant_id=tenant_id, warehouse_id=warehouse.id, zone_id=europe.id,
                         service_type='standard', base_rate=Decimal('30.00'), per_kg_rate=Decimal('7.50'),
                         min_charge=Decimal('40.00'), effective_from=opened),
        ])

        session.add(StoragePricing(tenant_id=tenant_id, warehouse_id=warehouse.id, free_days=7,
                                   daily_rate=Decimal('2.00'), effective_from=opened))

        session.add_all([
            BinLocation(tenant_id=tenant_id, warehouse_id=warehouse.id, bin_code='A01',
                        zone_name='Standard', max_capacity=1),
            BinLocation(tenant_id=tenant_id, warehouse_id=warehouse.id, bin_code='A02',
                        zone_name='Standard', max_capacity=10),
            BinLocation(tenant_id=tenant_id, warehouse_id=warehouse.id, bin_code='P01',
                        zone_name='Premium', max_capacity=4, daily_premium=Decimal('0.50'),
                        is_climate_controlled=True, is_secured=True),
            BinLocation(tenant_id=tenant_id, warehouse_id=warehouse.id, bin_code='BULK',
                        zone_name='Overflow', max_capacity=None),
        ])

        session.add_all([
            Package(tenant_id=tenant_id, warehouse_id=warehouse.id, tracking_number=f'1Z{n:06d}',
                    weight_kg=Decimal(w))
            for n, w in enumerate(('2.0', '3.5', '0.8'), start=1)
        ])
    logger.info("Seeded 1 warehouse, 2 zones, 3 rates, 1 storage policy, 4 bins and 3 packages.")


if __name__ == '__main__':
    initialize_db(make_engine(DATABASE_URL))
