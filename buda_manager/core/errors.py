# buda_manager/core/errors.py
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    # validation
    MISSING_PARAMETERS = "MISSING_PARAMETERS"
    UNSUPPORTED_SCHEMA_VERSION = "UNSUPPORTED_SCHEMA_VERSION"
    INVALID_DATASET_DEFINITION = "INVALID_DATASET_DEFINITION"
    INVALID_REQUEST = "INVALID_REQUEST"
    # lookup
    INVALID_ZONE_ID = "INVALID_ZONE_ID"
    # security
    INVALID_CLIENT_CERTIFICATE = "INVALID_CLIENT_CERTIFICATE"
    UNSIGNED_CLIENT_CERTIFICATE = "UNSIGNED_CLIENT_CERTIFICATE"
    FUTURE_CLIENT_CERTIFICATE = "FUTURE_CLIENT_CERTIFICATE"
    EXPIRED_CLIENT_CERTIFICATE = "EXPIRED_CLIENT_CERTIFICATE"
    # operational
    INTERNAL_ERROR = "INTERNAL_ERROR"


class BudaError(Exception):
    """
    Base for every control-plane failure. Carries the wire code and,
    for validation failures, field-level details.
    """
    status_code: int = 400

    def __init__(self, code: ErrorCode, details: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(code.value)
        self.code = code
        self.details = details

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": True, "desc": self.code.value}
        if self.details:
            body["details"] = self.details
        return body


class DatasetValidationError(BudaError):
    status_code = 400


class NotFoundError(BudaError):
    status_code = 404

    def __init__(self) -> None:
        super().__init__(ErrorCode.INVALID_ZONE_ID)


class SecurityError(BudaError):
    status_code = 401


class OperationalError(BudaError):
    """
    Spawn failures, storage trouble, port exhaustion. The cause is logged
    server side; callers only ever see INTERNAL_ERROR.
    """
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(ErrorCode.INTERNAL_ERROR)
        self.message = message

    def __str__(self) -> str:
        return self.message or self.code.value
