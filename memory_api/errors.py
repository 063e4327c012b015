class MemoryPipelineError(Exception):
    """Base class for errors surfaced to callers of the memory pipeline."""

    status_code: int = 500

    def __init__(self, message: str, *, details: str = ""):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(MemoryPipelineError):
    status_code = 400


class ForbiddenError(MemoryPipelineError):
    status_code = 403


class PersistenceError(MemoryPipelineError):
    status_code = 500


class StoreError(Exception):
    """Raised by store implementations when a read or write fails."""
