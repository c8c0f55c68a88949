"""
Reading and writing the packed archive container.

The layout of a container is as follows (all ints are unsigned, 32-bit, little-endian)::

    magic           b'BFPK'
    version         opaque, preserved as-is
    entry_count
    entry_count x:
        name_length
        name        name_length bytes, single-byte encoded, '/'-separated
        size
        offset      relative to the start of the payload region
    payload         the data of all entries, concatenated in index order

The payload region starts right after the entry table.
"""

import os

from abc import ABCMeta, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, Optional

from atmfjstc.lib.scrap_packed.binary import BinaryReader, BinaryWriter, BinaryReaderFormatError
from atmfjstc.lib.scrap_packed.entry import PackedEntry
from atmfjstc.lib.scrap_packed.index import PackedIndex
from atmfjstc.lib.scrap_packed.errors import NotAScrapPackedFileError, ScrapPackedFileCorruptError, \
    DuplicatePathError, InvalidPackedPathError, PackedIOError


MAGIC = b'BFPK'
NAME_ENCODING = 'latin-1'

HEADER_SIZE = 12
ENTRY_FIXED_SIZE = 12  # name length, size, offset


@dataclass(frozen=True)
class DecodedContainer:
    version: int
    index: PackedIndex
    payload_base: int


class PayloadSource(metaclass=ABCMeta):
    """
    Supplies the data of the entries when a container is being encoded.
    """

    @abstractmethod
    def copy_entry_data(self, entry: PackedEntry, dest: BinaryIO) -> int:
        """
        Writes the data of an entry (from wherever its origin points to) into `dest`.

        Returns:
            The number of bytes copied. Anything other than `entry.size` is treated as a failure.
        """
        raise NotImplementedError


def decode(fileobj: BinaryIO) -> DecodedContainer:
    """
    Reads the header and entry table of a packed archive.

    The payload region is not read; only its position is recorded in the result, for use by whoever needs the entry
    data later.

    Args:
        fileobj: A binary file object positioned at the start of the container.

    Returns:
        A `DecodedContainer` holding the stored version, an index of the entries (all of them with a `PackedOrigin`)
        and the absolute position of the payload region within the file object.

    Raises:
        NotAScrapPackedFileError: If the data does not start with the packed archive signature.
        ScrapPackedFileCorruptError: If the entry table is truncated, contains duplicate names, or points past the end
            of the data.
    """

    reader = BinaryReader(fileobj)

    try:
        reader.expect_magic(MAGIC, 'packed archive signature')
    except BinaryReaderFormatError as e:
        raise NotAScrapPackedFileError(reader.name()) from e

    try:
        version = reader.read_uint32('version')
        n_entries = reader.read_uint32('entry count')

        entries = [_read_entry(reader) for _ in range(n_entries)]
    except BinaryReaderFormatError as e:
        raise ScrapPackedFileCorruptError(reader.name()) from e

    payload_base = reader.tell()

    index = PackedIndex()
    for entry in entries:
        try:
            index.insert(entry)
        except DuplicatePathError as e:
            raise ScrapPackedFileCorruptError(reader.name(), f"duplicate entry '{entry.path}'") from e

    payload_size = _maybe_get_remaining_size(fileobj, payload_base)
    if payload_size is not None:
        for entry in entries:
            if entry.offset + entry.size > payload_size:
                raise ScrapPackedFileCorruptError(
                    reader.name(), f"data for entry '{entry.path}' extends past the end of the file"
                )

    return DecodedContainer(version=version, index=index, payload_base=payload_base)


def _read_entry(reader: BinaryReader) -> PackedEntry:
    name = decode_name(reader.read_length_prefixed_bytes('entry name'))
    size = reader.read_uint32('entry size')
    offset = reader.read_uint32('entry offset')

    return PackedEntry.from_archive(name, size, offset)


def _maybe_get_remaining_size(fileobj: BinaryIO, position: int) -> Optional[int]:
    if not fileobj.seekable():
        return None

    end_position = fileobj.seek(0, os.SEEK_END)
    fileobj.seek(position, os.SEEK_SET)

    return end_position - position


def encode(fileobj: BinaryIO, version: int, index: PackedIndex, payload_source: PayloadSource):
    """
    Writes a complete packed archive: header, entry table and the data of all entries.

    The offsets of the entries must have been recomputed (see `PackedIndex.recompute_offsets`) beforehand, so that they
    match the order in which the data is written.

    Args:
        fileobj: A binary file object to write to.
        version: The version number to store in the header.
        index: The entries to write, in order.
        payload_source: Provides the data of each entry.

    Raises:
        PackedIOError: If a payload source provided less data than the size of its entry.
        InvalidPackedPathError: If an entry name cannot be encoded.
    """

    writer = BinaryWriter(fileobj)

    writer.write_bytes(MAGIC)
    writer.write_uint32(version)
    writer.write_uint32(len(index))

    expected_offset = 0
    for entry in index:
        if entry.offset != expected_offset:
            raise ValueError(f"Offsets must be recomputed before encoding (entry '{entry.path}' is out of place)")

        writer.write_length_prefixed_bytes(encode_name(entry.path))
        writer.write_uint32(entry.size)
        writer.write_uint32(entry.offset)

        expected_offset += entry.size

    for entry in index:
        copied = payload_source.copy_entry_data(entry, fileobj)
        if copied != entry.size:
            raise PackedIOError(
                None, f"Expected {entry.size} bytes of data for entry '{entry.path}', but only {copied} were available"
            )


def write_empty_container(fileobj: BinaryIO, version: int = 0):
    writer = BinaryWriter(fileobj)

    writer.write_bytes(MAGIC)
    writer.write_uint32(version)
    writer.write_uint32(0)


def table_size(index: PackedIndex) -> int:
    """
    Computes the size of the header and entry table for an index, i.e. the position at which the payload region will
    start once the index is encoded.
    """
    return HEADER_SIZE + sum(ENTRY_FIXED_SIZE + len(encode_name(entry.path)) for entry in index)


def encode_name(path: str) -> bytes:
    try:
        return path.encode(NAME_ENCODING)
    except UnicodeEncodeError as e:
        raise InvalidPackedPathError(path, f"cannot be represented in the {NAME_ENCODING} encoding") from e


def decode_name(raw_name: bytes) -> str:
    return raw_name.decode(NAME_ENCODING)
