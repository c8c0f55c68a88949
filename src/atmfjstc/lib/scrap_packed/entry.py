"""
Records describing the entries of a packed archive.
"""

from dataclasses import dataclass, replace
from typing import Union


MAX_ENTRY_SIZE = 0xFFFFFFFF


@dataclass(frozen=True)
class PackedOrigin:
    """
    The entry's data is stored in the currently open archive, at `offset` bytes from the start of its payload region.
    """
    offset: int


@dataclass(frozen=True)
class ExternalOrigin:
    """
    The entry's data is pending import from an outside file, and will only be read when the archive is next saved.
    """
    source_path: str
    source_offset: int = 0


EntryOrigin = Union[PackedOrigin, ExternalOrigin]


@dataclass(frozen=True)
class PackedEntry:
    """
    One indexed record in a packed archive.

    Objects of this type are inert and immutable. An index replaces them wholesale when an entry is renamed or its
    offset is recomputed.

    Attributes:
        path: The path of the entry inside the archive, with ``/`` separators. Unique within an index.
        size: The size of the entry data, in bytes. This is authoritative: exactly this many bytes are read from the
            origin when extracting or saving.
        origin: Where the entry data currently lives (see `PackedOrigin` and `ExternalOrigin`).
        offset: The layout offset of the entry relative to the start of the payload region. For an entry read from an
            archive, this is the offset stored in its index; otherwise it is only meaningful after offsets have been
            recomputed prior to a save.
    """

    path: str
    size: int
    origin: EntryOrigin
    offset: int = 0

    def __post_init__(self):
        if not (0 <= self.size <= MAX_ENTRY_SIZE):
            raise ValueError(f"Entry size must be between 0 and {MAX_ENTRY_SIZE}, is {self.size}")

    @property
    def is_pending(self) -> bool:
        return isinstance(self.origin, ExternalOrigin)

    @property
    def base_name(self) -> str:
        return self.path.rsplit('/', 1)[-1]

    def renamed(self, new_path: str) -> 'PackedEntry':
        return replace(self, path=new_path)

    def moved_to(self, offset: int) -> 'PackedEntry':
        return replace(self, offset=offset)

    def absorbed(self) -> 'PackedEntry':
        return replace(self, origin=PackedOrigin(self.offset))

    @staticmethod
    def from_archive(path: str, size: int, offset: int) -> 'PackedEntry':
        return PackedEntry(path=path, size=size, origin=PackedOrigin(offset), offset=offset)

    @staticmethod
    def from_external_file(source_path: str, path: str, size: int) -> 'PackedEntry':
        return PackedEntry(path=path, size=size, origin=ExternalOrigin(source_path))
