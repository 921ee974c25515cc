"""
Error taxonomy for job orchestration.

Every error carries a ``kind`` (stable string shown to users and stored on the
job) and a ``retryable`` flag. The coordinator decides retries from the flag,
never from the message text.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ErrorInfo:
    """Structured last error attached to a job."""
    kind: str
    message: str
    retryable: bool = False
    at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "at": self.at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorInfo":
        return cls(
            kind=data["kind"],
            message=data["message"],
            retryable=data.get("retryable", False),
            at=datetime.fromisoformat(data["at"]) if data.get("at") else utcnow(),
        )

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class MlxError(Exception):
    kind = "Error"
    retryable = False

    def __init__(self, message: str = "", *, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(kind=self.kind, message=self.message, retryable=self.retryable)

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}" if self.message else self.kind


# Fatal errors

class InvalidSpec(MlxError):
    kind = "InvalidSpec"

    def __init__(self, problems):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class IllegalTransition(MlxError):
    kind = "IllegalTransition"


class JobNotFound(MlxError):
    kind = "JobNotFound"


class NodeNotFound(MlxError):
    kind = "NodeNotFound"


class ConfigError(MlxError):
    kind = "ConfigError"


class AuthFailed(MlxError):
    kind = "AuthFailed"


# Transient errors, retried by the coordinator up to max_retries

class ConnectionFailed(MlxError):
    kind = "ConnectionFailed"
    retryable = True


class BackendUnreachable(MlxError):
    kind = "BackendUnreachable"
    retryable = True


class ResourceUnavailable(MlxError):
    kind = "ResourceUnavailable"
    retryable = True


class DeployFailed(MlxError):
    kind = "DeployFailed"
    retryable = True


class ImagePullFailed(MlxError):
    kind = "ImagePullFailed"
    retryable = True


class ContainerCrashed(MlxError):
    kind = "ContainerCrashed"
    retryable = True

    def __init__(self, message: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code
