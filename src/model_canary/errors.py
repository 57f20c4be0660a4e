"""Exception taxonomy for canary rollout control.

Validation, not-found and invalid-transition errors surface synchronously
to callers. Upstream failures are isolated per deployment or model inside
the monitoring loops.
"""

from __future__ import annotations

from collections.abc import Iterable


class CanaryError(Exception):
    """Base class for all model-canary errors."""


class DeploymentValidationError(CanaryError, ValueError):
    """Raised when a deployment configuration is malformed."""

    def __init__(self, errors: str | Iterable[str]) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("Invalid deployment configuration: " + "; ".join(self.errors))


class NotFoundError(CanaryError, KeyError):
    """Raised for an unknown deployment, model or dataset id."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")

    def __str__(self) -> str:
        # KeyError would repr() the message
        return str(self.args[0])


class InvalidStateTransitionError(CanaryError):
    """Raised when a lifecycle operation is attempted from an incompatible state."""

    def __init__(
        self,
        deployment_id: str,
        operation: str,
        current: str,
        allowed: Iterable[str],
    ) -> None:
        self.deployment_id = deployment_id
        self.operation = operation
        self.current = current
        self.allowed = sorted(allowed)
        super().__init__(
            f"Cannot {operation} deployment '{deployment_id}' in status '{current}' "
            f"(requires one of: {', '.join(self.allowed)})"
        )


class UpstreamUnavailableError(CanaryError):
    """Raised when the metrics provider or model registry call fails."""

    def __init__(self, collaborator: str, detail: str = "") -> None:
        self.collaborator = collaborator
        message = f"{collaborator} unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StaleVersionError(CanaryError):
    """Raised when an optimistic version check fails."""

    def __init__(self, deployment_id: str, expected: int, actual: int) -> None:
        self.deployment_id = deployment_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Deployment '{deployment_id}' is at version {actual}, expected {expected}"
        )
