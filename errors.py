"""
Error taxonomy for the No-Due service.

Services raise these instead of HTTPException so the workflow code stays
independent of the web layer; main.py maps them onto HTTP responses.

Usage:
    from errors import NotFoundError, ConflictError

    if not doc:
        raise NotFoundError("Application not found")
"""

from typing import Any, Dict, Optional


class NoDueError(Exception):
    """Base exception for all workflow errors"""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(NoDueError):
    """Malformed input or violated business constraint"""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class AuthenticationError(NoDueError):
    """Missing or invalid credentials"""

    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="AUTH_FAILED")


class AuthorizationError(NoDueError):
    """Caller lacks the role or assignment for this action"""

    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="NOT_AUTHORIZED")


class SubmissionClosedError(AuthorizationError):
    """Submission window is closed for the student's batch"""

    def __init__(self, message: str):
        super().__init__(message)
        self.code = "SUBMISSION_CLOSED"


class NotFoundError(NoDueError):
    status_code = 404

    def __init__(self, message: str):
        super().__init__(message, code="NOT_FOUND")


class ConflictError(NoDueError):
    """Duplicate record or an action that does not fit the current state"""

    status_code = 409

    def __init__(self, message: str):
        super().__init__(message, code="CONFLICT")


class WorkflowError(NoDueError):
    """Downstream failure while applying a workflow change"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="WORKFLOW_FAILED", details=details)
