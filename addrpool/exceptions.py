"""Error taxonomy of the address pool service.

Every error carries the HTTP status the API layer answers with, so services
can raise them without knowing about FastAPI.
"""


class PoolEngineError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidCidr(PoolEngineError):
    status_code = 400


class RangeTooLarge(PoolEngineError):
    status_code = 400


class PoolNotFound(PoolEngineError):
    status_code = 404


class RouterNotFound(PoolEngineError):
    status_code = 404


class AddressNotFound(PoolEngineError):
    status_code = 404


class PoolExhausted(PoolEngineError):
    status_code = 409


class AddressNotAvailable(PoolEngineError):
    status_code = 409


class SessionAlreadyAssigned(PoolEngineError):
    status_code = 409


class PoolInactive(PoolEngineError):
    status_code = 409


class PoolOverlap(PoolEngineError):
    status_code = 409


class PoolNameTaken(PoolEngineError):
    status_code = 409


class PoolInUse(PoolEngineError):
    status_code = 409


class RouterInUse(PoolEngineError):
    status_code = 409


class RouterNameTaken(PoolEngineError):
    status_code = 409


class RouterUnreachable(PoolEngineError):
    """Transient router failure; safe to retry."""

    status_code = 503


class SyncConflict(PoolEngineError):
    """The router refused a change in a way retrying will not fix."""

    status_code = 409


class SessionLookupFailed(PoolEngineError):
    status_code = 503
