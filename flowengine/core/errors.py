"""Engine exception hierarchy.

Every terminal non-success state carries a machine-readable ``code`` and a
human-readable ``message``; ``to_dict()`` is the wire form used in
checkpoints, events and HTTP responses.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base exception for all engine errors."""

    code: str = "ENGINE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


# =============================================================================
# VALIDATION
# =============================================================================

@dataclass
class ValidationIssue:
    """One graph or config violation, addressed by a dotted path."""
    code: str
    message: str
    path: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class GraphValidationError(EngineError):
    """Graph or node configuration is malformed. Never retried."""

    code = "VALIDATION_FAILED"

    def __init__(self, issues: List[ValidationIssue]):
        self.issues = list(issues)
        summary = "; ".join(f"{i.path}: {i.message}" if i.path else i.message
                            for i in self.issues[:5])
        super().__init__(f"Graph validation failed ({len(self.issues)} issue(s)): {summary}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "issues": [i.to_dict() for i in self.issues],
        }


# =============================================================================
# TEMPLATES
# =============================================================================

class TemplateError(EngineError):
    """Unresolved or malformed interpolation. Fails the owning node immediately."""

    code = "TEMPLATE_ERROR"
    retryable = False

    def __init__(self, message: str, code: str = "UNRESOLVED_PATH", path: Optional[str] = None):
        self.path = path
        super().__init__(message, code)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "path": self.path}


# =============================================================================
# NODE EXECUTION
# =============================================================================

RETRYABLE_CODES = frozenset([
    "TIMEOUT",
    "RATE_LIMITED",
    "UPSTREAM_ERROR",
    "CONNECTION_ERROR",
])


class ExecutionError(EngineError):
    """Raised by a node kind. ``retryable`` drives the retry controller."""

    code = "EXECUTION_ERROR"

    def __init__(self, message: str, code: str = "EXECUTION_ERROR",
                 retryable: Optional[bool] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code)
        self.retryable = code in RETRYABLE_CODES if retryable is None else retryable
        self.details = details or {}

    @classmethod
    def from_status(cls, status_code: int, message: str = "") -> "ExecutionError":
        """Classify an upstream HTTP status."""
        message = message or f"Upstream responded with HTTP {status_code}"
        if status_code == 429:
            code = "RATE_LIMITED"
        elif status_code == 408 or status_code == 504:
            code = "TIMEOUT"
        elif status_code >= 500:
            code = "UPSTREAM_ERROR"
        elif status_code in (401, 403):
            code = "UNAUTHORIZED"
        elif status_code == 404:
            code = "NOT_FOUND"
        else:
            code = "BAD_INPUT"
        return cls(message, code, details={"status": status_code})

    def to_dict(self) -> Dict[str, Any]:
        d = {"code": self.code, "message": self.message, "retryable": self.retryable}
        if self.details:
            d["details"] = self.details
        return d


class RetriesExhausted(EngineError):
    """A node failed for good: non-retryable error or no attempts left."""

    code = "RETRIES_EXHAUSTED"

    def __init__(self, node_id: str, error: EngineError, attempts: List[Dict[str, Any]]):
        self.node_id = node_id
        self.error = error
        self.attempts = attempts
        super().__init__(f"Node '{node_id}' failed after {len(attempts)} attempt(s): {error.message}",
                         code=error.code)


# =============================================================================
# PERSISTENCE
# =============================================================================

class PersistenceError(EngineError):
    """Checkpoint or log write failed. Fatal to this process's ownership."""

    code = "PERSISTENCE_ERROR"


class LeaseLostError(PersistenceError):
    """Another process owns (or the TTL expired on) the execution lease."""

    code = "LEASE_LOST"


# =============================================================================
# CANCELLATION
# =============================================================================

class CancellationSignal(EngineError):
    """Cooperative cancellation. Produces ``cancelled``, not ``failed``."""

    code = "CANCELLED"

    def __init__(self, message: str = "Cancelled by request"):
        super().__init__(message)


class WorkflowNotFound(EngineError):
    code = "WORKFLOW_NOT_FOUND"


class ExecutionNotFound(EngineError):
    code = "EXECUTION_NOT_FOUND"
