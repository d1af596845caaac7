"""Exceptions raised by adapters and caught at component boundaries."""


class ReconstructionError(Exception):
    """Base class for turn audio reconstruction errors."""


class ProviderError(ReconstructionError):
    """The voice provider API could not be reached or returned an error."""


class DownloadError(ReconstructionError):
    """The full conversation audio could not be retrieved."""


class ExtractionError(ReconstructionError):
    """Slicing one segment out of the full audio failed."""


class StorageError(ReconstructionError):
    """An object storage or record store operation failed."""
