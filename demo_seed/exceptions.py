"""
Exceptions raised by the injection engine.

Record-level and batch-level problems are captured into result objects;
only the InvariantViolation family is allowed to abort a run.
"""

from typing import Optional


class SeedError(Exception):
    """Base class for all demo_seed errors."""


class ConnectionSetupError(SeedError):
    """Raised when no usable Salesforce credentials can be found."""


class InjectionConfigError(SeedError):
    """Raised when an injection configuration document is malformed."""


class TransportError(SeedError):
    """
    A batch-level failure talking to Salesforce (network, auth, HTTP error).

    Every record in the affected submission is failed with this message.
    """

    def __init__(self, message: str, object_type: Optional[str] = None, batch_size: int = 0):
        super().__init__(message)
        self.object_type = object_type
        self.batch_size = batch_size


class BulkJobError(TransportError):
    """A Bulk API 2.0 ingest job ended in Failed/Aborted state or timed out."""

    def __init__(self, message: str, job_id: Optional[str] = None, state: Optional[str] = None,
                 object_type: Optional[str] = None, batch_size: int = 0):
        super().__init__(message, object_type=object_type, batch_size=batch_size)
        self.job_id = job_id
        self.state = state


class DegradedMetadataWarning(UserWarning):
    """Describe metadata was unavailable; validation runs with reduced guarantees."""


class InjectionCancelled(SeedError):
    """Cooperative cancellation signal, checked between object type phases."""


class InvariantViolation(SeedError):
    """An internal invariant of a run was broken. Aborts the run."""


class IdentifierConflictError(InvariantViolation):
    """A local id was assigned a second, different Salesforce id."""

    def __init__(self, local_id: str, existing: str, attempted: str):
        super().__init__(
            f"Local id {local_id} is already mapped to {existing}; refusing to remap to {attempted}"
        )
        self.local_id = local_id
        self.existing = existing
        self.attempted = attempted


class DuplicateLocalIdError(InvariantViolation):
    """The same local id appears on more than one input record."""


class SnapshotError(SeedError):
    """Base class for snapshot lifecycle errors."""


class SnapshotNotFoundError(SnapshotError):
    pass


class SnapshotNotReadyError(SnapshotError):
    pass
