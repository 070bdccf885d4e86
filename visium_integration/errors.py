"""
Exceptions raised by the loading, reconciliation and export steps.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(PipelineError):
    """Configuration is missing a required value or holds an invalid one."""


class MissingInputError(PipelineError):
    """An input path is absent or unreadable."""


class SchemaError(PipelineError):
    """Input or output tables are structurally inconsistent."""


class DownloadError(PipelineError):
    """A dataset could not be fetched after all retries."""


class ReconciliationError(PipelineError):
    """A record cannot be mapped onto the configured samples."""


class UnknownSampleError(ReconciliationError):
    """A composite barcode carries no configured sample prefix."""


class MalformedBarcodeError(ReconciliationError):
    """A barcode is too short to strip the instrument suffix from."""


class DuplicateBarcodeError(ReconciliationError):
    """Two records of one sample reconcile to the same barcode."""
