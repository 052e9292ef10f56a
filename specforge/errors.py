"""Error kinds surfaced at the API and MCP boundaries."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class SpecForgeError(Exception):
    """Base error carrying a stable code and HTTP status."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


class InvalidIdError(SpecForgeError):
    code = "INVALID_ID"
    http_status = 400


class InvalidBodyError(SpecForgeError):
    code = "INVALID_BODY"
    http_status = 400


class InvalidRequestError(SpecForgeError):
    code = "INVALID_REQUEST"
    http_status = 400


class MissingFieldError(SpecForgeError):
    code = "MISSING_FIELD"
    http_status = 400


class NotFoundError(SpecForgeError):
    code = "NOT_FOUND"
    http_status = 404


class AuthFailedError(SpecForgeError):
    code = "AUTH_FAILED"
    http_status = 401


class ForbiddenError(SpecForgeError):
    code = "FORBIDDEN"
    http_status = 403


class InternalError(SpecForgeError):
    pass


class GovernanceError(SpecForgeError):
    """Raised when an admission gate rejects a mutation.

    Still rendered as INTERNAL_ERROR/500; callers match on the message prefix.
    """

    def __init__(self, reasons: List[str]):
        self.reasons = list(reasons)
        super().__init__(f"governance check failed: [{' '.join(self.reasons)}]")


class InvalidTransitionError(SpecForgeError):
    code = "INVALID_REQUEST"
    http_status = 400

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"invalid state transition: {from_state} -> {to_state}")


class ImportSessionLockedError(SpecForgeError):
    code = "INVALID_REQUEST"
    http_status = 400

    def __init__(self):
        super().__init__("import session is locked and complete")


class EmptySnapshotError(SpecForgeError):
    code = "INVALID_BODY"
    http_status = 400

    def __init__(self):
        super().__init__(
            "snapshot_payload is empty: no documents were provided in the request. "
            "please ensure you document and submit at least one category (e.g. contracts, apis, modules)"
        )


class TokenError(AuthFailedError):
    pass


def error_envelope(error: SpecForgeError) -> Dict[str, Any]:
    """Render the failure response envelope."""
    return {"success": False, "error": error.to_dict()}
