# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

from __future__ import annotations

from typing import IO, TypeAlias

# Define a custom type for the input
ImageSource: TypeAlias = str | bytes | IO[bytes]


def div_roundup(a, b):
    """Return a/b rounded up to nearest integer,
    equivalent result to int(math.ceil(float(int(a)) / float(int(b))), only
    without possible floating point accuracy errors.
    """
    return (int(a) + int(b) - 1) // int(b)


def align_up(value, alignment):
    """Round value up to the next multiple of alignment"""
    return div_roundup(value, alignment) * alignment


def hexify(s, uppercase=True):
    format_str = "%02X" if uppercase else "%02x"
    return "".join(format_str % c for c in s)


def is_valid_data(data: bytes | None) -> bool:
    """Key and data fields are unset when erased (all 0xFF) or zeroed."""
    if not data:
        return False
    return data.count(0xFF) != len(data) and data.count(0x00) != len(data)


def optional_data(data: bytes) -> bytes | None:
    return data if is_valid_data(data) else None


def fill_data(data: bytes | None, size: int, fill=b"\xff") -> bytes:
    """Return data as a field of exactly size bytes, or a filled field if unset"""
    if data is None:
        return fill * size
    if len(data) > size:
        raise BuildError(f"Field of {len(data)} bytes does not fit into {size} bytes")
    return data + fill * (size - len(data))


def read_exact(f: IO[bytes], size: int, what: str = "data") -> bytes:
    """Read exactly size bytes or raise DecodeError"""
    offset = f.tell()
    data = f.read(size)
    if len(data) < size:
        raise DecodeError(
            f"End of file reading {what}, length {size:#x} "
            f"(actual length {len(data):#x})",
            offset,
        )
    return data


def align_file_position(f, size, start=0):
    """Align the position in the file to the next block of specified size,
    counted from start"""
    pad = (size - (f.tell() - start) % size) % size
    f.seek(pad, 1)
    return pad


def write_padding(f, size, pad_character=b"\xff", start=0):
    """Fill the output up to the next block of specified size, counted from start"""
    pad = (size - (f.tell() - start) % size) % size
    f.write(pad_character * pad)
    return pad


def get_bytes(input: ImageSource) -> tuple[bytes, str | None]:
    """
    Normalize the input (file path, bytes, or an opened file-like object) into bytes
    and provide a name of the source.

    Args:
        input: The input file path, bytes, or an opened file-like object.

    Returns:
        A tuple containing the normalized bytes and the source of the input.
    """
    if isinstance(input, str):
        with open(input, "rb") as f:
            data = f.read()
            source = input
    elif isinstance(input, (bytes, bytearray)):
        data = bytes(input)
        source = None
    elif hasattr(input, "read") and hasattr(input, "seek"):
        pos = input.tell()
        data = input.read()
        input.seek(pos)  # Reset the file pointer
        source = getattr(input, "name", None)
    else:
        raise FatalError(f"Invalid input type {type(input)}")
    return data, source


class FatalError(RuntimeError):
    """
    Wrapper class for runtime errors that aren't caused by internal bugs, but by
    image content or by the values a caller asked to build.
    """

    def __init__(self, message):
        RuntimeError.__init__(self, message)


class DecodeError(FatalError):
    """
    Raised for truncated input, an enum value with no matching variant or a
    declared length running past the end of the stream.
    """

    def __init__(self, message, offset=None):
        if offset is not None:
            message = f"{message} at offset {offset:#x}"
        FatalError.__init__(self, message)
        self.offset = offset


class BuildError(FatalError):
    """
    Raised before any bytes are written when the model can't be serialized,
    e.g. a cipher key without its IV.
    """


class RangeError(FatalError):
    """
    Wrapper class for a partition that doesn't fit the flash it is placed into.
    """

    def __init__(self, message, partition=None):
        FatalError.__init__(self, message)
        self.partition = partition


class ConfigError(FatalError):
    """Invalid configuration file value or memory map."""
