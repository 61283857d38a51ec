"""Lookups of the warehouses and packages the engine prices and stores.

Both directories belong to the surrounding application; the engine only
reads them. Helpers take an open session so they run inside the caller's
transaction.
"""

from typing import Optional

from db.setup import Package, Warehouse, session_scope
from logiyard.errors import NotFoundError


def get_warehouse(session, warehouse_id: int, tenant_id: str) -> Optional[Warehouse]:
    return (
        session.query(Warehouse)
        .filter_by(id=warehouse_id, tenant_id=tenant_id)
        .one_or_none()
    )


def require_warehouse(session, warehouse_id: int, tenant_id: str, lock: bool = False) -> Warehouse:
    query = session.query(Warehouse).filter_by(id=warehouse_id, tenant_id=tenant_id)
    if lock:
        query = query.with_for_update()
    warehouse = query.one_or_none()
    if warehouse is None:
        raise NotFoundError("Warehouse", warehouse_id)
    return warehouse


def get_package(session, package_id: int) -> Optional[Package]:
    return session.get(Package, package_id)


def require_package(session, package_id: int, lock: bool = False) -> Package:
    query = session.query(Package).filter_by(id=package_id)
    if lock:
        query = query.with_for_update()
    package = query.one_or_none()
    if package is None:
        raise NotFoundError("Package", package_id)
    return package


class Directory:
    """Session-owning facade for callers outside an engine transaction."""

    def __init__(self, session_factory):
        self.DBSession = session_factory

    def get_warehouse(self, warehouse_id: int, tenant_id: str) -> Optional[Warehouse]:
        with session_scope(self.DBSession) as session:
            return get_warehouse(session, warehouse_id, tenant_id)

    def get_package(self, package_id: int) -> Optional[Package]:
        with session_scope(self.DBSession) as session:
            return get_package(session, package_id)
