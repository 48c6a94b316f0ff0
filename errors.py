"""
Domain exceptions for the Campus Bus API.

Services raise these; the exception handler in main.py turns them into
`{"success": false, "code": ..., "message": ...}` responses.
"""
from typing import Any, Dict


class CampusBusError(Exception):
    """Base exception for all Campus Bus errors"""

    status_code = 500

    def __init__(self, message: str, code: str = "INTERNAL_ERROR"):
        self.message = message
        self.code = code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "code": self.code,
            "message": self.message,
        }


class ValidationError(CampusBusError):
    """Missing or malformed input"""

    status_code = 400

    def __init__(self, message: str = "Please provide all required fields"):
        super().__init__(message, code="VALIDATION_ERROR")


class AuthenticationError(CampusBusError):
    status_code = 401

    def __init__(self, message: str = "Could not validate credentials"):
        super().__init__(message, code="AUTH_FAILED")


class AuthorizationError(CampusBusError):
    """Actor is not entitled to act on the entity"""

    status_code = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message, code="NOT_AUTHORIZED")


class NotFoundError(CampusBusError):
    status_code = 404

    def __init__(self, resource_type: str, resource_id: Any = None):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(
            f"{resource_type} not found",
            code=f"{resource_type.upper().replace(' ', '_')}_NOT_FOUND",
        )


class ConflictError(CampusBusError):
    status_code = 409

    def __init__(self, message: str):
        super().__init__(message, code="CONFLICT")


class StateError(CampusBusError):
    """Transition not allowed from the current status"""

    status_code = 400

    def __init__(self, message: str, current_status: str = None):
        self.current_status = current_status
        super().__init__(message, code="INVALID_STATE")
