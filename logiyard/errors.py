"""Error taxonomy for the pricing and capacity engine.

Every error carries a stable ``code``, the HTTP ``status`` the web layer
answers with, and a ``detail`` dict naming the resources involved.
"""

from typing import Any, Dict, Optional


class LogiyardError(Exception):
    """Base class for every error the engine raises."""

    status = 400
    code = "LOGIYARD_ERROR"

    def __init__(self, message: str, **detail: Any):
        self.message = message
        self.detail: Dict[str, Any] = detail
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "code": self.code,
            "message": self.message,
            "detail": {k: _jsonable(v) for k, v in self.detail.items()},
        }


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    return str(value)


class NotFoundError(LogiyardError):
    status = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: Any):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} not found", resource=resource, resource_id=resource_id)


class OverlapError(LogiyardError):
    """An active definition already covers part of the requested effective window."""

    status = 409
    code = "RATE_OVERLAP"

    def __init__(self, conflicting_id: int, message: Optional[str] = None, **detail: Any):
        self.conflicting_id = conflicting_id
        super().__init__(
            message or f"Effective window overlaps active rate {conflicting_id}",
            conflicting_id=conflicting_id,
            **detail,
        )


class InUseError(LogiyardError):
    status = 409
    code = "IN_USE"


class UnavailableError(LogiyardError):
    status = 409
    code = "BIN_UNAVAILABLE"

    def __init__(self, bin_id: int):
        self.bin_id = bin_id
        super().__init__(f"Bin {bin_id} is inactive or not available", bin_id=bin_id)


class AlreadyAssignedError(LogiyardError):
    status = 409
    code = "ALREADY_ASSIGNED"

    def __init__(self, package_id: int, bin_id: Optional[int] = None):
        self.package_id = package_id
        self.bin_id = bin_id
        super().__init__(
            f"Package {package_id} already has an active bin assignment",
            package_id=package_id,
            bin_id=bin_id,
        )


class CapacityExceededError(LogiyardError):
    status = 409
    code = "CAPACITY_EXCEEDED"

    def __init__(self, bin_id: int, max_capacity: int):
        self.bin_id = bin_id
        self.max_capacity = max_capacity
        super().__init__(
            f"Bin {bin_id} is at maximum capacity ({max_capacity} packages)",
            bin_id=bin_id,
            max_capacity=max_capacity,
        )


class PolicyNotFoundError(LogiyardError):
    status = 404
    code = "POLICY_NOT_FOUND"


class InvalidRangeError(LogiyardError):
    status = 422
    code = "INVALID_RANGE"


class AlreadyBilledError(LogiyardError):
    """The requested period intersects a storage charge already on record."""

    status = 409
    code = "ALREADY_BILLED"

    def __init__(self, package_id: int, charge_id: int):
        self.package_id = package_id
        self.charge_id = charge_id
        super().__init__(
            f"Package {package_id} is already billed for part of this period (charge {charge_id})",
            package_id=package_id,
            charge_id=charge_id,
        )
