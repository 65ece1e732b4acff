"""Domain errors.

`PoolError` subclasses carry the HTTP status and exception name the API
renders. Store and orchestrator errors are internal and mapped by callers.
"""

from http import HTTPStatus


class PoolError(Exception):
    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    name: str = "UnexpectedError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StageNotFound(PoolError):
    status_code = HTTPStatus.NOT_FOUND
    name = "StageNotFoundException"


class BucketNameMissing(PoolError):
    status_code = HTTPStatus.NOT_FOUND
    name = "BucketNameMissingException"


class AssetNotFound(PoolError):
    status_code = HTTPStatus.NOT_FOUND
    name = "AssetNotFoundException"


class VpAlreadyAssigned(PoolError):
    """Raised with 404 by the pre-check and 409 when a claim loses a race."""

    name = "VpAlreadyAssignedException"

    def __init__(self, message: str, conflict: bool = False):
        super().__init__(message)
        self.status_code = HTTPStatus.CONFLICT if conflict else HTTPStatus.NOT_FOUND


class VpNotAvailable(PoolError):
    status_code = HTTPStatus.NOT_FOUND
    name = "VpNotAvailableException"


class VpNotFound(PoolError):
    status_code = HTTPStatus.NOT_FOUND
    name = "VpNotFoundException"


# --- store ---


class StoreError(Exception):
    pass


class ConditionFailed(StoreError):
    """Record missing or the expected field values did not hold at write time."""

    def __init__(self, worker_id: str, reason: str):
        super().__init__(f"Condition failed for worker {worker_id}: {reason}")
        self.worker_id = worker_id
        self.reason = reason


class AlreadyExists(StoreError):
    def __init__(self, worker_id: str):
        super().__init__(f"Worker {worker_id} already exists")
        self.worker_id = worker_id


# --- orchestrator ---


class LaunchFailed(Exception):
    def __init__(self, worker_id: str, reason: str):
        super().__init__(f"Failed to launch worker {worker_id}: {reason}")
        self.worker_id = worker_id
        self.reason = reason
