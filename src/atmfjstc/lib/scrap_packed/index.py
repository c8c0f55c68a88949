"""
The in-memory index of a packed archive.

Entries are kept in an arena and addressed by integer handles that stay stable for as long as the entry is in the
index. Both the ordered sequence (which determines the on-disk layout) and the path lookup store handles only, so
that renaming an entry can never leave the two out of sync.
"""

from typing import Dict, List, Iterator, Iterable, Tuple, Optional

from atmfjstc.lib.scrap_packed.entry import PackedEntry
from atmfjstc.lib.scrap_packed.errors import PathNotFoundError, DuplicatePathError


EntryHandle = int


class PackedIndex:
    _arena: Dict[EntryHandle, PackedEntry]
    _sequence: List[EntryHandle]
    _by_path: Dict[str, EntryHandle]
    _next_handle: EntryHandle

    def __init__(self, entries: Iterable[PackedEntry] = ()):
        self._arena = dict()
        self._sequence = []
        self._by_path = dict()
        self._next_handle = 0

        for entry in entries:
            self.insert(entry)

    def __len__(self) -> int:
        return len(self._sequence)

    def __contains__(self, path: str) -> bool:
        return path in self._by_path

    def __iter__(self) -> Iterator[PackedEntry]:
        return (self._arena[handle] for handle in self._sequence)

    def paths(self) -> List[str]:
        return [entry.path for entry in self]

    def get(self, path: str) -> PackedEntry:
        """
        Gets the entry at a given path.

        Raises:
            PathNotFoundError: If there is no entry at that path.
        """
        return self._arena[self._require_handle(path)]

    def maybe_get(self, path: str) -> Optional[PackedEntry]:
        handle = self._by_path.get(path)

        return None if handle is None else self._arena[handle]

    def total_payload_size(self) -> int:
        return sum(entry.size for entry in self)

    def insert(self, entry: PackedEntry) -> EntryHandle:
        """
        Adds an entry at the end of the sequence.

        Args:
            entry: The entry to add. Its path must not already be present in the index.

        Returns:
            The handle assigned to the new entry.

        Raises:
            DuplicatePathError: If an entry with the same path already exists.
        """

        if entry.path in self._by_path:
            raise DuplicatePathError(entry.path)

        handle = self._next_handle
        self._next_handle += 1

        self._arena[handle] = entry
        self._sequence.append(handle)
        self._by_path[entry.path] = handle

        return handle

    def remove_by_path(self, path: str) -> PackedEntry:
        handle = self._require_handle(path)

        self._sequence.remove(handle)
        del self._by_path[path]

        return self._arena.pop(handle)

    def rename_path(self, old_path: str, new_path: str):
        """
        Renames a single entry, preserving its identity and position in the sequence.

        Raises:
            PathNotFoundError: If there is no entry at `old_path`.
            DuplicatePathError: If another entry already exists at `new_path`.
        """
        self.rename_paths([(old_path, new_path)])

    def rename_paths(self, renames: Iterable[Tuple[str, str]]):
        """
        Renames several entries at once.

        The operation is atomic: all renames are validated against the final state of the index before any of them is
        applied, so either all of them take effect or none do. This also means that an entry may be renamed to a path
        that is being vacated by another rename in the same batch.

        Args:
            renames: A sequence of ``(old_path, new_path)`` pairs.

        Raises:
            PathNotFoundError: If one of the old paths does not exist.
            DuplicatePathError: If two entries would end up with the same path, or a new path is already taken by an
                entry that is not being renamed.
        """

        renames = list(renames)

        handles = [self._require_handle(old_path) for old_path, _ in renames]
        vacated = set(old_path for old_path, _ in renames)

        if len(vacated) < len(renames):
            raise ValueError("The same entry cannot be renamed twice in one batch")

        taken = set()
        for _, new_path in renames:
            if (new_path in taken) or ((new_path in self._by_path) and (new_path not in vacated)):
                raise DuplicatePathError(new_path)

            taken.add(new_path)

        for old_path, _ in renames:
            del self._by_path[old_path]

        for handle, (_, new_path) in zip(handles, renames):
            self._arena[handle] = self._arena[handle].renamed(new_path)
            self._by_path[new_path] = handle

    def entries_with_prefix(self, prefix: str) -> List[PackedEntry]:
        """
        Gets all the entries whose path starts with a given prefix, in sequence order.

        Note that this is a plain string match, with no regard to path segments: the prefix ``dir1`` will match both
        ``dir1/x`` and ``dir10/x``. Callers wanting folder semantics should pass a prefix ending in ``/``.
        """
        return [entry for entry in self if entry.path.startswith(prefix)]

    def recompute_offsets(self):
        """
        Assigns each entry the offset it will have when the index is written out, i.e. the sum of the sizes of all the
        entries preceding it in the sequence. The origins of the entries are left untouched, so that their data can
        still be read from wherever it currently resides.
        """

        running_offset = 0

        for handle in self._sequence:
            entry = self._arena[handle]
            self._arena[handle] = entry.moved_to(running_offset)
            running_offset += entry.size

    def absorb(self):
        """
        Marks all entries as residing in the archive at their current offsets. This is to be called once the index has
        been successfully written out together with all the entry data.
        """
        for handle in self._sequence:
            self._arena[handle] = self._arena[handle].absorbed()

    def _require_handle(self, path: str) -> EntryHandle:
        handle = self._by_path.get(path)
        if handle is None:
            raise PathNotFoundError(path)

        return handle
