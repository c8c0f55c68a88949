"""
Exceptions raised by the packed archive engine.

All of them derive from `ScrapPackedError`. Where it makes sense, they also derive from the built-in exception that
best describes them (e.g. `KeyError` for missing paths, `OSError` for I/O failures), so that callers can catch them
either way.
"""

from typing import Optional, AnyStr


class ScrapPackedError(Exception):
    pass


class FormatError(ScrapPackedError):
    """
    Raised when a file does not have the structure of a packed archive.
    """


class NotAScrapPackedFileError(FormatError):
    def __init__(self, file_name: Optional[AnyStr]):
        quoted_name = f" '{file_name}'" if file_name is not None else ''
        super().__init__(f"File{quoted_name} is not a packed archive (unsupported file type)")


class ScrapPackedFileCorruptError(FormatError):
    def __init__(self, file_name: Optional[AnyStr], reason: Optional[str] = None):
        quoted_name = f" '{file_name}'" if file_name is not None else ''
        super().__init__(f"Packed archive{quoted_name} is corrupt or malformed{f': {reason}' if reason else ''}")


class PathNotFoundError(ScrapPackedError, KeyError):
    path: str

    def __init__(self, path: str, message: Optional[str] = None):
        self.path = path

        super().__init__(message or f"'{path}' does not exist in the archive")

    def __str__(self) -> str:
        return self.args[0]


class DuplicatePathError(ScrapPackedError, KeyError):
    path: str

    def __init__(self, path: str, message: Optional[str] = None):
        self.path = path

        super().__init__(message or f"'{path}' already exists in the archive")

    def __str__(self) -> str:
        return self.args[0]


class SizeLimitExceededError(ScrapPackedError, ValueError):
    path: str
    actual_size: int
    allowed_size: int

    def __init__(self, path: str, actual_size: int, allowed_size: int):
        self.path = path
        self.actual_size = actual_size
        self.allowed_size = allowed_size

        super().__init__(
            f"Unable to add file '{path}': its size ({actual_size} bytes) exceeds the maximum of {allowed_size} bytes"
        )


class InvalidPackedPathError(ScrapPackedError, ValueError):
    path: str

    def __init__(self, path: str, reason: str):
        self.path = path

        super().__init__(f"Invalid packed path '{path}': {reason}")


class BackupConflictError(ScrapPackedError):
    """
    Raised when the overwrite guard is used against its contract, e.g. a second backup is requested while one is
    already pending, or there is no backup to restore. This signals a bug in the caller, not a runtime condition.
    """


class PackedIOError(ScrapPackedError, OSError):
    path: Optional[str]

    def __init__(self, path: Optional[str], message: str):
        self.path = path

        super().__init__(message)

    def __str__(self) -> str:
        return self.args[0]
