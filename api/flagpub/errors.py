"""Error taxonomy shared by the compiler, key manager and publish pipeline.

Every error carries ``artifact_live``: ``False`` means nothing externally
visible changed, ``True`` means a new artifact may already be served to
clients even though the operation failed.
"""
from typing import Iterable, Optional


class FlagPublishError(Exception):
    status_code = 500
    artifact_live = False

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "detail": self.message,
            "artifact_live": self.artifact_live,
            "stage": self.stage,
        }


class ValidationError(FlagPublishError):
    status_code = 400

    def __init__(self, message: str, *, errors: Optional[list] = None, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.errors = errors or [message]

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["errors"] = self.errors
        return out


class MigrationRequired(FlagPublishError):
    status_code = 409

    def __init__(self, flag_key: str, missing: Iterable[str], *, stage: Optional[str] = None):
        self.flag_key = flag_key
        self.missing = list(missing)
        super().__init__(
            f'Flag "{flag_key}" is missing default values for environment(s) '
            f'{", ".join(self.missing)}; migrate it to per-environment defaults before publishing',
            stage=stage,
        )


class Conflict(FlagPublishError):
    status_code = 409


class NotFound(FlagPublishError):
    status_code = 404


class SigningKeyMissing(FlagPublishError):
    status_code = 409


class StorageError(FlagPublishError):
    status_code = 502


class StorageConfigurationError(StorageError):
    pass


class SignatureError(FlagPublishError):
    status_code = 500


class AuditIncomplete(FlagPublishError):
    """The artifact was uploaded but its PublishRecord could not be written."""

    status_code = 500
    artifact_live = True

    def __init__(self, message: str, *, version: str, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.version = version

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["version"] = self.version
        return out
