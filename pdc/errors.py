"""Error taxonomy shared by the controller, the API and the CLI."""
from __future__ import annotations


class ControllerError(Exception):
    exit_code = 1
    http_status = 500
    kind = "ControllerError"

    def to_dict(self) -> dict[str, str]:
        return {"error": self.kind, "detail": str(self)}


class IllegalTransition(ControllerError):
    """The verb is not defined for the deployment's current state."""

    exit_code = 3
    http_status = 409
    kind = "IllegalTransition"


class NonMonotonicShift(IllegalTransition):
    """A shift reversed the direction fixed earlier in the same rollout."""


class HealthCheckTimeout(ControllerError):
    exit_code = 4
    http_status = 504
    kind = "HealthCheckTimeout"


class OrchestrationUnavailable(ControllerError):
    """Transient orchestration failure; retried before it reaches a caller."""

    exit_code = 5
    http_status = 503
    kind = "OrchestrationUnavailable"


class InvariantViolation(ControllerError):
    """A controller bug: the record or selector broke an invariant."""

    exit_code = 6
    http_status = 500
    kind = "InvariantViolation"


class PoolNotFound(ControllerError):
    http_status = 404
    kind = "PoolNotFound"


class DeploymentNotFound(ControllerError):
    exit_code = 2
    http_status = 404
    kind = "DeploymentNotFound"


class RolloutPreempted(ControllerError):
    """An in-flight operation gave way to a rollback."""

    http_status = 409
    kind = "RolloutPreempted"
