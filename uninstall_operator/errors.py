"""
Error taxonomy for the uninstall operator.

  PreconditionError     blocking, ends the run with a non-zero exit
  StoreError            store failure with kind / operation context
    NotFoundError         absorbed by callers (already done)
    ConflictError         absorbed on optimistic-update races
    TransientStoreError   retried by the controller with backoff
  StuckError            a kind that must not remain; retried until resolved externally
  BackupLookupError     Backup -> BackupVolume lookup failed for a reason other than not-found
  SyncError             change feed never reached initial sync
"""
from typing import Optional


class UninstallError(Exception):
    """Base class for every error raised by a teardown pass or its controller."""


class PreconditionError(UninstallError):
    pass


class StoreError(UninstallError):
    def __init__(self, kind: str, operation: str, name: str = "", cause: Optional[BaseException] = None):
        self.kind = kind
        self.operation = operation
        self.name = name
        self.cause = cause
        target = f"{kind}/{name}" if name else kind
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"failed to {operation} {target}{detail}")


class NotFoundError(StoreError):
    pass


class ConflictError(StoreError):
    pass


class TransientStoreError(StoreError):
    pass


class StuckError(UninstallError):
    def __init__(self, kind: str, remaining: int):
        self.kind = kind
        self.remaining = remaining
        super().__init__(f"found {remaining} {kind} remaining")


class BackupLookupError(UninstallError):
    def __init__(self, backup: str, cause: BaseException):
        self.backup = backup
        self.cause = cause
        super().__init__(f"failed to look up backup volume for backup {backup}: {cause}")


class SyncError(UninstallError):
    pass
