"""Error taxonomy for imports and undo."""

from __future__ import annotations


class RowError(Exception):
    """A problem with one spreadsheet row; never fatal to the run."""

    def __init__(self, message: str, code: str = "ROW_ERROR") -> None:
        super().__init__(message)
        self.code = code


class UndoIneligibleError(Exception):
    """Raised before any state change when an undo request cannot start."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ImportNotFound(UndoIneligibleError):
    status_code = 404


class UndoAlreadyRunning(UndoIneligibleError):
    status_code = 202


class UndoAlreadyDone(UndoIneligibleError):
    status_code = 409


class UndoPreviouslyFailed(UndoIneligibleError):
    status_code = 409


class ImportNotReplayable(UndoIneligibleError):
    status_code = 409


class NotLatestImport(UndoIneligibleError):
    status_code = 400


class ReplayError(Exception):
    """Aborts the current undo chunk."""


class TenantGuardViolation(ReplayError):
    pass


class UnknownCollection(ReplayError):
    pass


class MissingSnapshot(ReplayError):
    pass


class UndoRunAbandoned(Exception):
    """The job left ``running`` underneath a worker, e.g. after being reaped."""
