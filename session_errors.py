"""
Session Errors for EduSec Labs
Error taxonomy shared by the container driver, lifecycle manager and API routes
"""

from typing import Any, Dict, Optional


class SessionError(Exception):
    """Base class for every lab session failure surfaced to callers"""

    error_code = "SESSION_ERROR"
    http_status = 500
    user_message = "An unexpected error occurred."

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        # Raw runtime diagnostic text (docker stderr etc.) for operators
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "message": self.user_message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ResourceNotFound(SessionError):
    error_code = "RESOURCE_NOT_FOUND"
    http_status = 404
    user_message = "Lab not found."


class NotContainerized(SessionError):
    error_code = "NOT_CONTAINERIZED"
    http_status = 400
    user_message = "Lab is not containerized yet."


class RuntimeUnavailable(SessionError):
    error_code = "RUNTIME_UNAVAILABLE"
    http_status = 503
    user_message = (
        "Docker is not running. Please start Docker and wait for it to "
        "fully load, then try again."
    )


class RuntimeTimeout(SessionError):
    error_code = "RUNTIME_TIMEOUT"
    http_status = 504
    user_message = "The container runtime did not answer in time. Please try again."


class PullFailed(SessionError):
    error_code = "PULL_FAILED"
    http_status = 502
    user_message = "Lab image not available. Please contact support."


class StartFailed(SessionError):
    error_code = "START_FAILED"
    http_status = 502
    user_message = "Failed to start lab. Please try again."


class NameConflict(StartFailed):
    error_code = "NAME_CONFLICT"
    http_status = 409
    user_message = "A container for this lab is still shutting down. Please try again."


class ContainerNotFound(SessionError):
    error_code = "CONTAINER_NOT_FOUND"
    http_status = 404
    user_message = "Lab container not found."


class PortExhausted(SessionError):
    error_code = "PORT_EXHAUSTED"
    http_status = 500
    user_message = "Server is busy. Please try again later."


class SessionNotRunning(SessionError):
    error_code = "SESSION_NOT_RUNNING"
    http_status = 409
    user_message = "Lab container is not running. Please start the lab first."
