"""Error taxonomy for the compilation sandbox.

Every failure a caller can observe is one of these exceptions. The API layer
turns them into ``{"error", "kind", ...}`` bodies with the status code declared
here; anything else becomes a generic 500.

    ValidationError     400  bad input, rejected before any I/O
    NotFoundError       404  target / path missing from a cloned repository
    Unauthorized        401  missing or wrong API key
    ResourceExceeded    429  rate limit hit, carries retry_after
    PayloadTooLarge     413  request body over the configured cap
    RepositoryTooLarge  413  clone exceeds repository size / file limits
    ToolTimeout         504  external tool exceeded its deadline
    ToolFailure         400  external tool failed (compile error, bad PDF)
    CloneFailure        400  git failed; message already scrubbed of credentials
    ServiceUnavailable  503  server is draining for shutdown

Cleanup failures never appear here: they are logged by the workspace registry
and never reach the caller.
"""

from __future__ import annotations

import math
from typing import Any


class SandboxError(Exception):
    """Base class for caller-visible sandbox failures."""

    status_code: int = 500
    kind: str = "internal"

    def __init__(self, message: str, *, log: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.log = log

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "kind": self.kind}
        if self.log is not None:
            payload["log"] = self.log
        return payload


class ValidationError(SandboxError):
    status_code = 400
    kind = "validation"


class NotFoundError(ValidationError):
    status_code = 404
    kind = "not_found"


class Unauthorized(SandboxError):
    status_code = 401
    kind = "unauthorized"


class ResourceExceeded(SandboxError):
    """Rate limit hit. ``retry_after`` is in seconds."""

    status_code = 429
    kind = "rate_limited"

    def __init__(self, message: str, *, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after))

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["retryAfter"] = self.retry_after_seconds
        return payload


class PayloadTooLarge(SandboxError):
    status_code = 413
    kind = "payload_too_large"

    def __init__(self, message: str, *, limit: int, observed: int) -> None:
        super().__init__(message)
        self.limit = limit
        self.observed = observed

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["limit"] = self.limit
        payload["observed"] = self.observed
        return payload


class RepositoryTooLarge(PayloadTooLarge):
    """Cloned repository exceeds the archive byte or file-count cap."""


class ToolTimeout(SandboxError):
    status_code = 504
    kind = "tool_timeout"

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["timedOut"] = True
        return payload


class ToolFailure(SandboxError):
    status_code = 400
    kind = "tool_failure"

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["timedOut"] = False
        return payload


class CloneFailure(SandboxError):
    status_code = 400
    kind = "clone_failure"


class ServiceUnavailable(SandboxError):
    status_code = 503
    kind = "unavailable"
