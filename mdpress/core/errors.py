class MdpressError(Exception):
    """Base class for all mdpress failures."""


class StorageError(MdpressError):
    """Reading or writing the local store failed."""


class MigrationError(MdpressError):
    """Persisted data (legacy or current layout) could not be parsed."""


class RenderError(MdpressError):
    """A markup block or a diagram could not be converted."""


class ExportError(MdpressError):
    """Rasterization or page assembly failed; no artifact was produced."""


class ExportInProgressError(ExportError):
    def __init__(self, message="Export already in progress"):
        super().__init__(message)
