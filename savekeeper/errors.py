"""Custom exceptions for the backup engine."""


class BackupError(RuntimeError):
    """Base class for errors that end a backup run."""


class SourceMissingError(BackupError):
    """Raised when the job source directory does not exist."""


class EncryptionKeyMissingError(BackupError):
    """Raised when a file must be encrypted but no key is configured."""


class EncryptionToolMissingError(BackupError):
    """Raised when the external encryption executable cannot be found."""


class EncryptionFailedError(BackupError):
    """Raised when the external encryption executable exits with an error."""


class BusinessSoftwareRunningError(BackupError):
    """Raised when the configured business application blocks a run."""


class JobNotFoundError(KeyError):
    """Raised when a job name is not registered with the manager."""


class DuplicateJobError(ValueError):
    """Raised when adding a job whose name is already registered."""


__all__ = [
    "BackupError",
    "SourceMissingError",
    "EncryptionKeyMissingError",
    "EncryptionToolMissingError",
    "EncryptionFailedError",
    "BusinessSoftwareRunningError",
    "JobNotFoundError",
    "DuplicateJobError",
]
