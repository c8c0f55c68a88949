"""
This module contains `ScrapPackedFile`, the main interface for working with a packed archive.
"""

import os
import logging

from contextlib import ExitStack
from dataclasses import dataclass
from typing import BinaryIO, Optional, List, Tuple

from atmfjstc.lib.scrap_packed import PathType
from atmfjstc.lib.scrap_packed.binary import copy_exact
from atmfjstc.lib.scrap_packed.codec import decode, encode, write_empty_container, table_size, encode_name, \
    PayloadSource
from atmfjstc.lib.scrap_packed.entry import PackedEntry, PackedOrigin, MAX_ENTRY_SIZE
from atmfjstc.lib.scrap_packed.errors import PathNotFoundError, SizeLimitExceededError, InvalidPackedPathError, \
    PackedIOError
from atmfjstc.lib.scrap_packed.guard import OverwriteGuard
from atmfjstc.lib.scrap_packed.index import PackedIndex
from atmfjstc.lib.scrap_packed.targets import parse_target, folder_prefix, DirectoryTarget


LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntryListing:
    """
    A summary of an entry, as presented to callers that list the contents of an archive.

    Attributes:
        path: The path of the entry inside the archive.
        size: The size of the entry data, in bytes.
        offset: The offset of the entry data relative to the start of the payload region, or None if the entry was
            added from an external file and the archive has not been saved since.
        pending: True if the entry data still lives in an external file.
    """

    path: str
    size: int
    offset: Optional[int]
    pending: bool


class ScrapPackedFile:
    """
    An open packed archive.

    All edits (`add`, `remove`, `rename`) are performed on an in-memory index and only reach the disk when `save` is
    called. Data added from external files is not read until then either, so those files must remain in place.

    The archive file itself is not kept open between operations.

    This class is not thread-safe. Callers must make sure that no two operations on the same archive run concurrently.
    """

    _file_name: str
    _version: int
    _payload_base: int
    _index: PackedIndex
    _guard: OverwriteGuard

    def __init__(self, file_name: PathType, guard: Optional[OverwriteGuard] = None):
        """
        Opens a packed archive, creating it if it does not exist.

        Args:
            file_name: The path of the archive. If there is no file there, a new empty archive (version 0, no entries)
                is written first, creating parent directories as needed.
            guard: The overwrite guard used for protecting files during extraction and saving. A new one is created by
                default.

        Raises:
            NotAScrapPackedFileError: If the file is not a packed archive.
            ScrapPackedFileCorruptError: If the file looks like a packed archive, but its index is damaged.
            PackedIOError: If the file could not be read or created.
        """

        self._file_name = os.fsdecode(file_name)
        self._guard = guard or OverwriteGuard()

        if not os.path.exists(self._file_name):
            self._create_empty()

        self._read_metadata()

    def _create_empty(self):
        LOG.debug("Creating new empty archive '%s'", self._file_name)

        _make_parent_dirs(self._file_name)

        try:
            with open(self._file_name, 'wb') as f:
                write_empty_container(f)
        except OSError as e:
            raise PackedIOError(self._file_name, f"Unable to create '{self._file_name}': {e}") from e

    def _read_metadata(self):
        try:
            with open(self._file_name, 'rb') as f:
                decoded = decode(f)
        except OSError as e:
            raise PackedIOError(self._file_name, f"Unable to read '{self._file_name}': {e}") from e

        self._version = decoded.version
        self._index = decoded.index
        self._payload_base = decoded.payload_base

        LOG.debug("Opened archive '%s' (version %d, %d entries)", self._file_name, self._version, len(self._index))

    @property
    def file_name(self) -> str:
        return self._file_name

    @property
    def version(self) -> int:
        """
        The version number stored in the archive header. It is not interpreted in any way, just preserved on save.
        """
        return self._version

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, packed_path: str) -> bool:
        return packed_path in self._index

    def list_entries(self) -> Tuple[EntryListing, ...]:
        """
        Lists the entries in the archive, in the order in which they are (or will be) stored.
        """
        return tuple(
            EntryListing(
                path=entry.path,
                size=entry.size,
                offset=entry.origin.offset if isinstance(entry.origin, PackedOrigin) else None,
                pending=entry.is_pending,
            )
            for entry in self._index
        )

    def get_entry(self, packed_path: str) -> PackedEntry:
        return self._index.get(packed_path)

    def folder_content(self, prefix: str) -> List[PackedEntry]:
        """
        Gets all the entries whose path starts with `prefix`, in order.

        Note that this is a plain string match: ``dir1`` matches ``dir10/x`` too. Use a prefix ending in ``/`` to
        restrict the match to a folder.
        """
        return self._index.entries_with_prefix(prefix)

    def add(self, external_path: PathType, packed_path: str = ''):
        """
        Adds a file, or the contents of a directory, to the archive.

        Entries that already exist at the same packed path are replaced. The data of the new entries is not read until
        the archive is saved.

        Args:
            external_path: The file or directory to add.
            packed_path: For a file, the path it will have in the archive. If empty, the file's base name is used. If
                it ends in ``/``, the file is placed in that folder under its base name. For a directory, the folder
                under which its contents will be placed (the directory itself is not included, only its contents,
                recursively). If empty, the contents are placed at the root.

        Raises:
            FileNotFoundError: If `external_path` does not exist.
            SizeLimitExceededError: If a file is too big to be stored in an archive. When adding a directory, no
                entries are added at all in this case.
            InvalidPackedPathError: If a resulting packed path cannot be stored in an archive.
            PackedIOError: If a directory could not be listed. No entries are added in this case.
        """

        external_path = os.fsdecode(external_path)

        if os.path.isdir(external_path):
            new_entries = self._plan_directory_add(external_path, packed_path)
        else:
            new_entries = [self._plan_file_add(external_path, packed_path)]

        for entry in new_entries:
            if entry.path in self._index:
                LOG.debug("Replacing existing entry '%s'", entry.path)
                self._index.remove_by_path(entry.path)

            self._index.insert(entry)

        LOG.debug("Added %d entries from '%s'", len(new_entries), external_path)

    def _plan_directory_add(self, external_dir: str, packed_path: str) -> List[PackedEntry]:
        prefix = folder_prefix(packed_path)

        planned = []

        for dir_path, dir_names, file_names in os.walk(external_dir, onerror=_raise_listing_error):
            dir_names.sort()

            for name in sorted(file_names):
                source_path = os.path.join(dir_path, name)
                relative_path = os.path.relpath(source_path, external_dir).replace(os.sep, '/')

                planned.append(_make_external_entry(source_path, prefix + relative_path))

        return planned

    def _plan_file_add(self, external_file: str, packed_path: str) -> PackedEntry:
        if packed_path == '' or packed_path.endswith('/'):
            packed_path = folder_prefix(packed_path) + os.path.basename(external_file)

        return _make_external_entry(external_file, packed_path)

    def rename(self, old_name: str, new_name: str):
        """
        Renames an entry, or a folder.

        Args:
            old_name: The path of the entry to rename. If it designates a folder (ends in ``/`` or is empty), all the
                entries whose path starts with it are renamed, by replacing that prefix with `new_name`.
            new_name: The new path, or, for a folder, the new prefix.

        Raises:
            PathNotFoundError: If there is no such entry, or no entries in the folder.
            DuplicatePathError: If a new path is already taken. No entries are renamed in this case.
            InvalidPackedPathError: If a new path cannot be stored in an archive.
        """

        target = parse_target(old_name)

        if isinstance(target, DirectoryTarget):
            entries = self._require_folder(target, old_name, 'rename')
            renames = [(entry.path, new_name + target.relative_path(entry.path)) for entry in entries]
        else:
            self._require_file(target.path, 'rename')
            renames = [(target.path, new_name)]

        for _, new_path in renames:
            _check_packed_path(new_path)

        self._index.rename_paths(renames)

        LOG.debug("Renamed '%s' to '%s' (%d entries)", old_name, new_name, len(renames))

    def remove(self, name: str):
        """
        Removes an entry, or all the entries in a folder.

        Raises:
            PathNotFoundError: If there is no such entry, or no entries in the folder.
        """

        target = parse_target(name)

        if isinstance(target, DirectoryTarget):
            paths = [entry.path for entry in self._require_folder(target, name, 'remove')]
        else:
            self._require_file(target.path, 'remove')
            paths = [target.path]

        for path in paths:
            self._index.remove_by_path(path)

        LOG.debug("Removed '%s' (%d entries)", name, len(paths))

    def extract(self, packed_path: str, destination_path: PathType):
        """
        Extracts an entry, or a folder, to the filesystem.

        Existing files at the destination are overwritten, but safely: if writing the new content fails, the previous
        version of the file is restored.

        Args:
            packed_path: The entry to extract. If it designates a folder, all the entries whose path starts with it are
                extracted, with the rest of their paths recreated as subdirectories of `destination_path`.
            destination_path: For a single entry, the file to write to. If it ends with a path separator or is an
                existing directory, the entry is written inside it, under its base name. For a folder, the directory
                under which the entries will be written. Missing directories are created.

        Raises:
            PathNotFoundError: If there is no such entry, or no entries in the folder.
            InvalidPackedPathError: If an entry path would escape the destination directory.
            PackedIOError: If reading the data or writing the destination file failed.
        """

        destination_path = os.fsdecode(destination_path)
        target = parse_target(packed_path)

        if isinstance(target, DirectoryTarget):
            jobs = [
                (entry, _join_packed_path(destination_path, target.relative_path(entry.path)))
                for entry in self._require_folder(target, packed_path, 'extract')
            ]
        else:
            entry = self._require_file(target.path, 'extract')

            if _names_directory(destination_path):
                destination_path = os.path.join(destination_path, entry.base_name)

            jobs = [(entry, destination_path)]

        with ExitStack() as stack:
            payload = _ArchivePayloadSource(self._file_name, self._payload_base, stack)

            for entry, destination in jobs:
                self._extract_entry(entry, destination, payload)

        LOG.debug("Extracted '%s' to '%s' (%d entries)", packed_path, destination_path, len(jobs))

    def _extract_entry(self, entry: PackedEntry, destination: str, payload: '_ArchivePayloadSource'):
        _make_parent_dirs(destination)

        def _write():
            with open(destination, 'wb') as f:
                copied = payload.copy_entry_data(entry, f)

            if copied != entry.size:
                raise PackedIOError(
                    destination,
                    f"Expected {entry.size} bytes of data for entry '{entry.path}', but only {copied} were available"
                )

        self._guard.guarded_write(destination, _write, temporary=True).raise_for_failure()

    def save(self, new_path: PathType = ''):
        """
        Writes the archive, with all the changes made so far, to disk.

        If the destination already exists (which is always the case when saving in place), it is first moved to a
        backup (``<destination>.bak``), which is restored if the save fails and deleted if it succeeds.

        After a successful save, the archive refers to the destination file, and all entries added from external files
        are now stored in it.

        Args:
            new_path: The path to save to. By default, the archive is saved in place.

        Raises:
            PackedIOError: If any data could not be read, or the destination could not be written.
        """

        new_path = os.fsdecode(new_path)
        destination = new_path if len(new_path) > 0 else self._file_name
        in_place = _same_path(destination, self._file_name)

        self._index.recompute_offsets()

        _make_parent_dirs(destination)

        def _write():
            source_path = self._file_name
            if in_place and (self._guard.backup_path is not None):
                source_path = self._guard.backup_path

            with ExitStack() as stack:
                f = stack.enter_context(open(destination, 'wb'))
                encode(f, self._version, self._index, _ArchivePayloadSource(source_path, self._payload_base, stack))

        self._guard.guarded_write(destination, _write).raise_for_failure()

        self._file_name = destination
        self._payload_base = table_size(self._index)
        self._index.absorb()

        LOG.debug("Saved archive '%s' (%d entries)", destination, len(self._index))

    def _require_file(self, packed_path: str, action: str) -> PackedEntry:
        entry = self._index.maybe_get(packed_path)
        if entry is None:
            raise PathNotFoundError(
                packed_path, f"Unable to {action} '{packed_path}': file does not exist in '{self._file_name}'"
            )

        return entry

    def _require_folder(self, target: DirectoryTarget, name: str, action: str) -> List[PackedEntry]:
        entries = self._index.entries_with_prefix(target.prefix)
        if len(entries) == 0:
            raise PathNotFoundError(name, f"Unable to {action} '{name}': folder does not exist in '{self._file_name}'")

        return entries


class _ArchivePayloadSource(PayloadSource):
    """
    Reads entry data from wherever it currently lives: the archive file (opened lazily, once) or an external file.
    """

    _archive_path: str
    _payload_base: int
    _stack: ExitStack
    _archive: Optional[BinaryIO] = None

    def __init__(self, archive_path: str, payload_base: int, stack: ExitStack):
        self._archive_path = archive_path
        self._payload_base = payload_base
        self._stack = stack

    def copy_entry_data(self, entry: PackedEntry, dest: BinaryIO) -> int:
        if isinstance(entry.origin, PackedOrigin):
            if self._archive is None:
                self._archive = self._stack.enter_context(open(self._archive_path, 'rb'))

            self._archive.seek(self._payload_base + entry.origin.offset)

            return copy_exact(self._archive, dest, entry.size)

        with open(entry.origin.source_path, 'rb') as f:
            f.seek(entry.origin.source_offset)

            return copy_exact(f, dest, entry.size)


def _make_external_entry(source_path: str, packed_path: str) -> PackedEntry:
    size = os.path.getsize(source_path)
    if size > MAX_ENTRY_SIZE:
        raise SizeLimitExceededError(source_path, size, MAX_ENTRY_SIZE)

    _check_packed_path(packed_path)

    return PackedEntry.from_external_file(source_path, packed_path, size)


def _check_packed_path(packed_path: str):
    if packed_path == '':
        raise InvalidPackedPathError(packed_path, "path is empty")
    if packed_path.endswith('/'):
        raise InvalidPackedPathError(packed_path, "a file path cannot end in '/'")

    encode_name(packed_path)


def _join_packed_path(base_dir: str, relative_path: str) -> str:
    parts = [part for part in relative_path.split('/') if part != '']

    if relative_path.startswith('/') or ('..' in parts) or (len(parts) == 0):
        raise InvalidPackedPathError(relative_path, "cannot be safely extracted under the destination directory")

    return os.path.join(base_dir, *parts)


def _names_directory(path: str) -> bool:
    separators = tuple(sep for sep in (os.sep, os.altsep, '/') if sep is not None)

    return path.endswith(separators) or os.path.isdir(path)


def _same_path(path1: str, path2: str) -> bool:
    return os.path.normcase(os.path.abspath(path1)) == os.path.normcase(os.path.abspath(path2))


def _make_parent_dirs(path: str):
    parent = os.path.dirname(path)
    if parent == '':
        return

    try:
        os.makedirs(parent, exist_ok=True)
    except OSError as e:
        raise PackedIOError(path, f"Unable to create parent directory for '{path}': {e}") from e


def _raise_listing_error(error: OSError):
    raise PackedIOError(error.filename, f"Unable to list directory '{error.filename}': {error}") from error
