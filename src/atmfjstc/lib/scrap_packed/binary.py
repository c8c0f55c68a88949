"""
Low-level binary I/O for the packed archive format.

This module contains the `BinaryReader` and `BinaryWriter` classes, thin wrappers around binary file objects that
read and write the little-endian fixed-size ints and length-prefixed strings the format is made of, as well as
`copy_exact`, for moving entry data between streams.
"""

from typing import BinaryIO, Optional, AnyStr, Union
from io import BytesIO, IOBase, TextIOBase


COPY_BUFFER_SIZE = 1024 * 1024


class BinaryReader:
    """
    Wraps a binary file object and offers functions for extracting little-endian ints, magic signatures and
    length-prefixed byte strings, raising `BinaryReaderFormatError` subclasses when the data is too short or wrong.
    """

    _fileobj: BinaryIO
    _position: int

    def __init__(self, data_or_fileobj: Union[bytes, BinaryIO]):
        self._fileobj = _parse_main_input_arg(data_or_fileobj)

        self._position = self._fileobj.tell() if self._fileobj.seekable() else 0

    def name(self) -> Optional[AnyStr]:
        name = getattr(self._fileobj, 'name', None)

        return None if ((name is None) or (name == '')) else name

    def tell(self) -> int:
        return self._position

    def read_at_most(self, n_bytes: int) -> bytes:
        """
        Try to read `n_bytes` of data, returning fewer only if the data is exhausted. Short reads are handled.
        """

        if n_bytes < 0:
            raise ValueError("The number of bytes to read cannot be negative")

        data = b''

        while len(data) < n_bytes:
            new_data = self._fileobj.read(n_bytes - len(data))
            if len(new_data) == 0:
                break

            self._position += len(new_data)
            data += new_data

        return data

    def read_amount(self, n_bytes: int, meaning: Optional[str] = None) -> bytes:
        """
        Reads exactly `n_bytes` from the underlying stream.

        Args:
            n_bytes: The amount of bytes to read.
            meaning: An indication as to the meaning of the data being read (e.g. "entry name"). It is used in the text
                of any exceptions that may be thrown.

        Raises:
            BinaryReaderReadPastEndError: If the data ends before the full `n_bytes` could be read.
        """

        original_pos = self._position

        data = self.read_at_most(n_bytes)

        if len(data) < n_bytes:
            raise BinaryReaderReadPastEndError(original_pos, n_bytes, len(data), meaning)

        return data

    def expect_magic(self, magic: bytes, meaning: Optional[str] = None):
        """
        Verifies that a specific byte sequence ("magic") follows in the underlying stream.

        Raises:
            BinaryReaderWrongMagicError: If the data read does not match the expected sequence (this includes the case
                where the stream is too short to contain it).
        """

        original_pos = self._position

        data = self.read_at_most(len(magic))

        if data != magic:
            raise BinaryReaderWrongMagicError(original_pos, magic, data, meaning)

    def read_uint32(self, meaning: Optional[str] = None) -> int:
        return int.from_bytes(self.read_amount(4, meaning=meaning or 'int'), byteorder='little', signed=False)

    def read_length_prefixed_bytes(self, meaning: Optional[str] = None) -> bytes:
        """
        Reads a byte string preceded by its length, stored as a 32-bit unsigned int.
        """

        length = self.read_uint32(f"length of {meaning or 'string'}")

        return self.read_amount(length, meaning=meaning)


class BinaryWriter:
    """
    The counterpart of `BinaryReader`: wraps a binary file object and writes little-endian ints and length-prefixed
    byte strings to it, keeping track of the number of bytes written.
    """

    _fileobj: BinaryIO
    _written: int

    def __init__(self, fileobj: BinaryIO):
        if not isinstance(fileobj, IOBase):
            raise TypeError("Output of BinaryWriter must be a file object")
        if isinstance(fileobj, TextIOBase):
            raise TypeError("BinaryWriter works on binary, not text file objects")

        self._fileobj = fileobj
        self._written = 0

    @property
    def bytes_written(self) -> int:
        return self._written

    def write_bytes(self, data: bytes):
        self._fileobj.write(data)
        self._written += len(data)

    def write_uint32(self, value: int):
        if not (0 <= value <= 0xFFFFFFFF):
            raise ValueError(f"Value {value} does not fit in an unsigned 32-bit int")

        self.write_bytes(value.to_bytes(4, byteorder='little', signed=False))

    def write_length_prefixed_bytes(self, data: bytes):
        self.write_uint32(len(data))
        self.write_bytes(data)


def copy_exact(source: BinaryIO, dest: BinaryIO, n_bytes: int) -> int:
    """
    Copies exactly `n_bytes` from the current position of `source` to `dest`, in chunks.

    Returns:
        The number of bytes actually copied. This will be less than `n_bytes` only if the source data ran out; it is up
        to the caller to decide how to treat that.
    """

    total_copied = 0

    while total_copied < n_bytes:
        chunk = source.read(min(COPY_BUFFER_SIZE, n_bytes - total_copied))
        if len(chunk) == 0:
            break

        dest.write(chunk)
        total_copied += len(chunk)

    return total_copied


def _parse_main_input_arg(input_: Union[bytes, BinaryIO]) -> BinaryIO:
    if isinstance(input_, bytes):
        return BytesIO(input_)

    if not isinstance(input_, IOBase):
        raise TypeError("Input to BinaryReader must be either bytes or a file object")
    if isinstance(input_, TextIOBase):
        raise TypeError("BinaryReader works on binary, not text file objects")

    return input_


class BinaryReaderFormatError(Exception):
    """
    This is used by the `BinaryReader` specifically to signal situations where the data does not match the expected
    format.
    """


class BinaryReaderReadPastEndError(BinaryReaderFormatError):
    position: int
    expected_length: int
    actual_length: int
    meaning: Optional[str]

    def __init__(self, position: int, expected_length: int, actual_length: int, meaning: Optional[str]):
        self.position = position
        self.expected_length = expected_length
        self.actual_length = actual_length
        self.meaning = meaning

        super().__init__(
            f"At position {position}, expected {expected_length} "
            f"bytes{f' for {meaning}' if meaning is not None else ''}"
            f", but only {actual_length} were found"
        )


class BinaryReaderWrongMagicError(BinaryReaderFormatError):
    position: int
    expected_magic: bytes
    found_magic: bytes
    meaning: Optional[str]

    def __init__(self, position: int, expected_magic: bytes, found_magic: bytes, meaning: Optional[str]):
        self.position = position
        self.expected_magic = expected_magic
        self.found_magic = found_magic
        self.meaning = meaning

        super().__init__(
            f"At position {position}, expected {meaning or 'magic'} 0x{expected_magic.hex()}, but found "
            f"0x{found_magic.hex()}"
        )
