"""
Protection for files that are about to be overwritten.

Before a destination file is overwritten (by extracting an entry over it, or by saving an archive), the previous
version is moved aside to a backup location. If the write fails, the backup is moved back into place; if it succeeds,
the backup is deleted. This way a failed operation leaves the destination exactly as it was.

The `OverwriteGuard` tracks at most one backup at a time. It is a small state machine with two states:

- `GuardState.IDLE`: no backup is pending
- `GuardState.PENDING`: one file has been moved aside and must be either restored or committed before another backup
  can be made

Using the guard out of order (e.g. two backups in a row) is a bug in the caller and raises `BackupConflictError`.

Most callers will just want `OverwriteGuard.guarded_write`, which wraps a unit of work with the whole
backup/restore/commit sequence.

Caution: like the rest of the package, this is not designed to be thread or multiprocess-safe.
"""

import os
import random
import string
import logging

from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Callable

from atmfjstc.lib.scrap_packed.errors import ScrapPackedError, BackupConflictError, PackedIOError


LOG = logging.getLogger(__name__)


BACKUP_SUFFIX = '.bak'
TEMP_SUFFIX = '.tmp'
TEMP_TAG_LENGTH = 5


class GuardState(Enum):
    IDLE = 'idle'
    PENDING = 'pending'


class GuardedWriteStatus(Enum):
    SUCCESS = 'success'
    FAILED_RESTORED = 'failed_restored'
    FAILED_WITHOUT_BACKUP = 'failed_without_backup'


@dataclass(frozen=True)
class GuardedWriteResult:
    """
    The outcome of `OverwriteGuard.guarded_write`.

    Attributes:
        status: Whether the write succeeded, and if not, whether a previous version of the file was restored.
        path: The path that was written to.
        error: The exception that caused the write to fail, if any.
    """

    status: GuardedWriteStatus
    path: str
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.status == GuardedWriteStatus.SUCCESS

    def raise_for_failure(self):
        """
        Raises the error that caused the write to fail, or does nothing if it succeeded.

        Errors from this package are raised as-is. `OSError`s are wrapped in a `PackedIOError`.
        """

        if self.succeeded:
            return

        if isinstance(self.error, ScrapPackedError) or not isinstance(self.error, OSError):
            raise self.error

        restored_note = " (the previous version was restored)" if self.status == GuardedWriteStatus.FAILED_RESTORED \
            else ''

        raise PackedIOError(self.path, f"Failed to write '{self.path}'{restored_note}: {self.error}") from self.error


class OverwriteGuard:
    _state: GuardState
    _path: Optional[str]
    _suffix: Optional[str]
    _random: random.Random

    def __init__(self, random_source: Optional[random.Random] = None):
        """
        Constructor.

        Args:
            random_source: The random number generator used for making up temporary backup names. Mostly useful for
                tests. By default, a fresh `random.Random` is used.
        """
        self._state = GuardState.IDLE
        self._path = None
        self._suffix = None
        self._random = random_source or random.Random()

    @property
    def state(self) -> GuardState:
        return self._state

    @property
    def backup_path(self) -> Optional[str]:
        """
        The location the pending backup was moved to, or None if no backup is pending.
        """
        return None if self._state == GuardState.IDLE else self._path + self._suffix

    def backup(self, path: str, temporary: bool = False) -> str:
        """
        Moves a file out of the way, to a backup location.

        Args:
            path: The file to back up. It must exist.
            temporary: If False, the backup is made at ``path + '.bak'``, replacing any previous backup there. If True,
                a random tag is inserted before the ``.bak`` suffix such that the backup does not clobber any existing
                file.

        Returns:
            The path of the backup.

        Raises:
            FileNotFoundError: If the file does not exist.
            BackupConflictError: If another backup is already pending.
            PackedIOError: If the file could not be moved.
        """

        path = os.fsdecode(path)

        if not os.path.isfile(path):
            raise FileNotFoundError(f"Unable to back up '{path}': file does not exist")
        if self._state != GuardState.IDLE:
            raise BackupConflictError(
                f"Unable to back up '{path}': a backup of '{self._path}' is still pending. Only one backup can be "
                f"tracked at a time."
            )

        suffix = (self._make_temp_tag(path) if temporary else '') + BACKUP_SUFFIX

        try:
            os.replace(path, path + suffix)
        except OSError as e:
            raise PackedIOError(path, f"Unable to back up '{path}' to '{path + suffix}': {e}") from e

        self._state = GuardState.PENDING
        self._path = path
        self._suffix = suffix

        LOG.debug("Backed up '%s' to '%s'", path, path + suffix)

        return path + suffix

    def _make_temp_tag(self, path: str) -> str:
        while True:
            tag = '.' + ''.join(self._random.choice(string.ascii_uppercase) for _ in range(TEMP_TAG_LENGTH)) + \
                TEMP_SUFFIX

            if not os.path.lexists(path + tag + BACKUP_SUFFIX):
                return tag

    def restore(self, path: str):
        """
        Moves the pending backup back to its original location, replacing whatever is there now.

        Raises:
            BackupConflictError: If there is no pending backup for this path, or the backup file has gone missing.
            PackedIOError: If the backup could not be moved back.
        """

        backup_path = self._require_backup(path, 'restore')

        try:
            os.replace(backup_path, self._path)
        except OSError as e:
            raise PackedIOError(self._path, f"Unable to restore '{self._path}' from '{backup_path}': {e}") from e

        LOG.debug("Restored '%s' from '%s'", self._path, backup_path)

        self._reset()

    def commit(self, path: str):
        """
        Deletes the pending backup, making the new version of the file permanent.

        Raises:
            BackupConflictError: If there is no pending backup for this path, or the backup file has gone missing.
            PackedIOError: If the backup could not be deleted.
        """

        backup_path = self._require_backup(path, 'delete')

        try:
            os.remove(backup_path)
        except OSError as e:
            raise PackedIOError(backup_path, f"Unable to delete backup '{backup_path}': {e}") from e

        LOG.debug("Deleted backup '%s'", backup_path)

        self._reset()

    def _require_backup(self, path: str, action: str) -> str:
        path = os.fsdecode(path)

        if self._state == GuardState.IDLE:
            raise BackupConflictError(f"File '{path}' does not have any backups to {action}")
        if path != self._path:
            raise BackupConflictError(
                f"File '{path}' does not have any backups to {action} (the pending backup is for '{self._path}')"
            )

        backup_path = self.backup_path
        if not os.path.isfile(backup_path):
            raise BackupConflictError(f"The backup of '{path}' at '{backup_path}' has gone missing")

        return backup_path

    def _reset(self):
        self._state = GuardState.IDLE
        self._path = None
        self._suffix = None

    def guarded_write(self, path: str, work: Callable[[], None], temporary: bool = False) -> GuardedWriteResult:
        """
        Performs a write to a file, protecting any previous version of it.

        If the file already exists, it is backed up first. Then `work` is called, which is expected to create and write
        the file at `path`. If it succeeds, the backup is deleted. If it fails, the backup is restored, or, if there
        was no previous version, whatever partial file was written is removed.

        Note that a failure of `work` does not raise an exception by itself: it is reported in the result, which the
        caller should check (`GuardedWriteResult.raise_for_failure` is convenient for this). Failures of the backup
        mechanism itself do raise, and so do interrupts such as `KeyboardInterrupt` (after the previous version of the
        file has been restored). If restoring fails, the guard is returned to the idle state anyway and the restore
        error is raised, with the original failure as its cause.

        Args:
            path: The file that `work` will write to.
            work: A callable that performs the write.
            temporary: Whether the backup (if any) should be made under a randomized name, see `backup`.

        Returns:
            A `GuardedWriteResult` describing the outcome.
        """

        path = os.fsdecode(path)

        backed_up = os.path.isfile(path)
        if backed_up:
            self.backup(path, temporary=temporary)

        try:
            work()
        except BaseException as e:
            if backed_up:
                LOG.warning("Writing '%s' failed, restoring its previous version", path)
                try:
                    self.restore(path)
                except ScrapPackedError as restore_error:
                    raise restore_error from e
                finally:
                    self._reset()

                status = GuardedWriteStatus.FAILED_RESTORED
            else:
                LOG.warning("Writing '%s' failed, removing partial output", path)
                with suppress(OSError):
                    os.remove(path)

                status = GuardedWriteStatus.FAILED_WITHOUT_BACKUP

            # Interrupts are only reported once the destination is back in order
            if not isinstance(e, Exception):
                raise

            return GuardedWriteResult(status, path, e)

        if backed_up:
            self.commit(path)

        return GuardedWriteResult(GuardedWriteStatus.SUCCESS, path)
