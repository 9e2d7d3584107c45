"""Custom exceptions for kodemachine."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ReservedLabelError(ManagerError):
    """Label collides with a command name."""


class MissingLabelError(ManagerError):
    """A command that needs a label was given none."""


class GoldenImageMissingError(ManagerError):
    """The golden image bundle is not present in the image store."""


class DisplayInUseError(ManagerError):
    """Another started instance already owns the display."""


class SharedDiskConflictError(ManagerError):
    """Starting this instance would attach the shared disk twice."""


class DocumentError(ManagerError):
    """A bundle's configuration document is missing or malformed."""


class CloneError(ManagerError):
    """Duplicating or re-identifying a bundle failed."""


class LockError(ManagerError):
    """The fleet lock is held by another invocation."""
