"""
Classification of the packed paths received by the archive operations.

A packed path that ends in ``/``, or is empty, designates a folder (the empty string and a lone ``/`` both mean the
root of the archive). Any other path designates a single file.
"""

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class FileTarget:
    path: str


@dataclass(frozen=True)
class DirectoryTarget:
    prefix: str

    def relative_path(self, entry_path: str) -> str:
        return entry_path[len(self.prefix):]


PackedTarget = Union[FileTarget, DirectoryTarget]


def parse_target(packed_path: str) -> PackedTarget:
    if packed_path in ('', '/'):
        return DirectoryTarget('')
    if packed_path.endswith('/'):
        return DirectoryTarget(packed_path)

    return FileTarget(packed_path)


def folder_prefix(packed_path: str) -> str:
    """
    Normalizes a packed folder path so that it ends in exactly one ``/``, or is empty for the root.
    """

    stripped = packed_path.rstrip('/')

    return stripped + '/' if stripped != '' else ''
