"""Error taxonomy and process exit codes.

Every error carries the exit code the CLI reports for it, so calling
automation can branch on outcome without parsing output.

Packaging, store and resolution errors are raised before any external
mutation and are safe to retry.  Deploy-phase failures are *not* raised by
executors; they are returned inside a ``DeploymentResult`` whose
``error_kind`` names one of the kinds below.
"""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit status, distinct per failure kind."""

    SUCCEEDED = 0
    USAGE = 2
    PACKAGING_FAILED = 10
    STORE_UNAVAILABLE = 11
    TARGET_NOT_FOUND = 12
    AMBIGUOUS_TARGET = 13
    DEPLOY_FAILED = 20
    DEPLOY_TIMED_OUT = 21
    DEPLOY_ROLLED_BACK = 22
    VERIFICATION_FAILED = 30
    AUTHORIZATION_DENIED = 40
    INTEGRITY = 50


class DeployforgeError(RuntimeError):
    """Base class for all deployforge errors."""

    exit_code: ExitCode = ExitCode.DEPLOY_FAILED
    kind: str = "deploy_failed"


class BuildFailedError(DeployforgeError):
    """Raised when the packaging build command exits non-zero."""

    exit_code = ExitCode.PACKAGING_FAILED
    kind = "build_failed"


class StoreUnavailableError(DeployforgeError):
    """Raised when the artifact store backend cannot be reached or written.

    The locally packaged artifact is left in place so the caller can retry.
    """

    exit_code = ExitCode.STORE_UNAVAILABLE
    kind = "store_unavailable"


class ArtifactIntegrityError(DeployforgeError):
    """Raised when stored bytes do not match their content hash."""

    exit_code = ExitCode.INTEGRITY
    kind = "integrity"


class TargetNotFoundError(DeployforgeError):
    """Raised when no target mapping exists for (service, environment)."""

    exit_code = ExitCode.TARGET_NOT_FOUND
    kind = "target_not_found"


class AmbiguousTargetError(DeployforgeError):
    """Raised when a (service, environment) maps to more than one target."""

    exit_code = ExitCode.AMBIGUOUS_TARGET
    kind = "ambiguous_target"


class IncompleteTargetError(TargetNotFoundError):
    """Raised when a target mapping is missing a required coordinate."""

    kind = "incomplete_target"


class DeployFailedError(DeployforgeError):
    """A deploy call failed; carries the target identity and machine state."""

    exit_code = ExitCode.DEPLOY_FAILED
    kind = "deploy_failed"

    def __init__(self, message: str, *, target_key: str = "", state: str = "") -> None:
        self.target_key = target_key
        self.state = state
        prefix = f"{target_key} [{state}]: " if target_key or state else ""
        super().__init__(f"{prefix}{message}")


class DeployTimedOutError(DeployFailedError):
    """Readiness polling exceeded the request timeout."""

    exit_code = ExitCode.DEPLOY_TIMED_OUT
    kind = "deploy_timed_out"


class AuthorizationDeniedError(DeployforgeError):
    """The federated role was refused by the provider.  Never retried."""

    exit_code = ExitCode.AUTHORIZATION_DENIED
    kind = "authorization_denied"


class VerificationFailedError(DeployforgeError):
    """Raised by the pipeline when the verification gate reports Unhealthy."""

    exit_code = ExitCode.VERIFICATION_FAILED
    kind = "verification_failed"


class InvalidTransitionError(DeployforgeError):
    """Raised when an executor requests a state transition that is not valid."""

    kind = "invalid_transition"


class CancellationRefusedError(DeployforgeError):
    """Raised when cancellation is requested while a mutation is in flight."""

    exit_code = ExitCode.USAGE
    kind = "cancellation_refused"


class TargetBusyError(DeployforgeError):
    """Raised under the ``reject`` conflict policy when a target is locked."""

    kind = "target_busy"


class LedgerIntegrityError(DeployforgeError):
    """Raised when the release ledger hash chain is broken."""

    exit_code = ExitCode.INTEGRITY
    kind = "ledger_integrity"


class ProductionConfigError(DeployforgeError):
    """Raised when the configuration is unsafe for a production environment."""

    exit_code = ExitCode.USAGE
    kind = "production_config"
