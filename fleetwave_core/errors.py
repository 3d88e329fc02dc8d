class FleetwaveError(Exception):
    """Base error for Fleetwave."""


class RecoverableError(FleetwaveError):
    """Indicates the operation can be retried safely."""


class PermanentError(FleetwaveError):
    """Indicates the operation should not be retried."""


class ValidationError(PermanentError):
    """Input validation failure."""


class TransferError(RecoverableError):
    """Artifact transfer to a device failed."""


class OperationTimeoutError(RecoverableError):
    """A per-device operation did not finish in time."""


class ChecksumMismatchError(ValidationError):
    """Artifact bytes do not match the declared checksum or signature."""


class CompatibilityError(ValidationError):
    """Artifact metadata does not match the target device descriptor."""


class InsufficientDiskError(ValidationError):
    """Device does not have room for the artifact."""


class TagExpressionError(ValidationError):
    """Malformed target selector expression."""


class DuplicateIdError(PermanentError):
    """A device with the same id is already registered."""


class DeviceNotFoundError(PermanentError):
    """No device is registered under the given id."""


class InvalidTransitionError(PermanentError):
    """The event is not legal from the device's current state."""


class DeploymentInProgressError(PermanentError):
    """The device is already owned by another deployment attempt."""


class InsufficientCanaryCoverageError(PermanentError):
    """Exclusions left fewer eligible canary devices than required."""


class PhaseError(PermanentError):
    """The requested orchestrator action is not valid in the current phase."""


class RollbackFailedError(PermanentError):
    """A device did not come healthy after restoring its previous version."""


class FleetHaltedError(PermanentError):
    """Deployment activity is halted fleet-wide after a fatal rollback failure."""


class DeviceUnavailableError(PermanentError):
    """The device is not in a deployable lifecycle state."""


class DeploymentNotFoundError(ValidationError):
    """No deployment is known under the given id."""
