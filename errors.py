"""
Error taxonomy for the license service.

Business outcomes travel as `OutcomeCode` values inside result objects;
exceptions are reserved for infrastructure failures (storage, identity).
"""

from enum import Enum


class OutcomeCode(str, Enum):
    """Outcome of a server-side license operation."""

    OK = "OK"
    FORMAT_ERROR = "FORMAT_ERROR"
    NOT_FOUND = "NOT_FOUND"
    LICENSE_INACTIVE = "LICENSE_INACTIVE"
    LICENSE_EXPIRED = "LICENSE_EXPIRED"
    LIMIT_REACHED = "LIMIT_REACHED"
    NOT_ACTIVATED_ON_MACHINE = "NOT_ACTIVATED_ON_MACHINE"
    STORAGE_ERROR = "STORAGE_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ErrorType(str, Enum):
    """Wire-level `errorType` category."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    LICENSE_INVALID = "LICENSE_INVALID"
    LICENSE_EXPIRED = "LICENSE_EXPIRED"
    LICENSE_LIMIT_REACHED = "LICENSE_LIMIT_REACHED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


ERROR_TYPE_BY_OUTCOME = {
    OutcomeCode.FORMAT_ERROR: ErrorType.VALIDATION_ERROR,
    OutcomeCode.NOT_FOUND: ErrorType.LICENSE_INVALID,
    OutcomeCode.LICENSE_INACTIVE: ErrorType.LICENSE_INVALID,
    OutcomeCode.LICENSE_EXPIRED: ErrorType.LICENSE_EXPIRED,
    OutcomeCode.LIMIT_REACHED: ErrorType.LICENSE_LIMIT_REACHED,
    OutcomeCode.NOT_ACTIVATED_ON_MACHINE: ErrorType.LICENSE_INVALID,
    OutcomeCode.STORAGE_ERROR: ErrorType.STORAGE_ERROR,
    OutcomeCode.NETWORK_ERROR: ErrorType.NETWORK_ERROR,
    OutcomeCode.TIMEOUT_ERROR: ErrorType.TIMEOUT_ERROR,
    OutcomeCode.UNKNOWN_ERROR: ErrorType.UNKNOWN_ERROR,
}

HTTP_STATUS_BY_OUTCOME = {
    OutcomeCode.OK: 200,
    OutcomeCode.FORMAT_ERROR: 400,
    OutcomeCode.NOT_FOUND: 404,
    OutcomeCode.LICENSE_INACTIVE: 403,
    OutcomeCode.NOT_ACTIVATED_ON_MACHINE: 403,
    OutcomeCode.LICENSE_EXPIRED: 410,
    OutcomeCode.LIMIT_REACHED: 429,
    OutcomeCode.STORAGE_ERROR: 500,
    OutcomeCode.UNKNOWN_ERROR: 500,
}


def error_type_for(code: OutcomeCode) -> ErrorType:
    return ERROR_TYPE_BY_OUTCOME.get(code, ErrorType.UNKNOWN_ERROR)


def http_status_for(code: OutcomeCode) -> int:
    return HTTP_STATUS_BY_OUTCOME.get(code, 500)


class LicenseServiceError(Exception):
    """Base exception for the license service."""

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__


class StorageError(LicenseServiceError):
    """Raised when the license store cannot complete an operation."""

    def __init__(self, message: str = "License storage unavailable"):
        super().__init__(message, code=OutcomeCode.STORAGE_ERROR.value)


class IdentityStorageError(LicenseServiceError):
    """Raised when a machine id provider cannot read or persist its value."""

    def __init__(self, message: str = "Machine id storage unavailable"):
        super().__init__(message, code=OutcomeCode.STORAGE_ERROR.value)


class DuplicateLicenseError(LicenseServiceError):
    """Raised when a license key is already present in the store."""

    def __init__(self, message: str = "License key already exists"):
        super().__init__(message, code="DUPLICATE_LICENSE")
