# SPDX-FileCopyrightText: 2024-2025 amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later
"""
NVDM key-value store kept in the VAR partition.

The partition is a sequence of physical erase blocks (PEB) of equal size.
Every block starts with a 12 byte header, the items of an active block
follow it back to back:

    DataItemHeader (20 bytes), group name, item name, value, u16 checksum

Both names are stored with their terminating NUL, which their size fields
include. The last 0x20 bytes of a block never start an item.
"""

from __future__ import annotations

import io
from dataclasses import dataclass

from .enums import WireEnum
from .headers import BinaryRecord
from .logger import log
from .util import DecodeError, FatalError, ImageSource, get_bytes, read_exact

PEB_MAGIC = b"NVDM"
ERASED_MAGIC = b"\xff" * 4
DEFAULT_PEB_SIZE = 0x1000
PEB_TAIL = 0x20


class PebStatus(WireEnum):
    ERASING = 0x80
    RECLAIMING = 0xC0
    ACTIVED = 0xE0
    TRANSFERED = 0xF0
    TRANSFERING = 0xF8
    ACTIVING = 0xFC
    EMPTY = 0xFE
    VIRGIN = 0xFF


class DataItemStatus(WireEnum):
    DELETE = 0xF8
    VALID = 0xFC
    WRITING = 0xFE
    EMPTY = 0xFF


class DataItemType(WireEnum):
    RAW_DATA = 1
    STRING = 2


# Items with these states occupy space in a block, anything else ends it
STORED_STATUSES = (DataItemStatus.DELETE, DataItemStatus.VALID, DataItemStatus.WRITING)


def _member_or_value(cls, value):
    # status and type bytes outside the known values are kept as integers
    try:
        return cls(value)
    except ValueError:
        return value


def _name(value) -> str:
    return value.name if isinstance(value, WireEnum) else f"{value:#04x}"


@dataclass
class PebHeader(BinaryRecord):
    FORMAT = "<4sIBBBB"

    erase_count: int = 0
    status: PebStatus | int = PebStatus.VIRGIN
    version: int = 0
    magic: bytes = PEB_MAGIC

    @classmethod
    def _unpack(cls, fields, offset):
        magic, erase_count, status, _, version, _ = fields
        if magic not in (PEB_MAGIC, ERASED_MAGIC):
            raise DecodeError(
                f"Invalid PEB magic {magic!r}, expected {PEB_MAGIC!r}", offset
            )
        return cls(
            erase_count=erase_count,
            status=_member_or_value(PebStatus, status),
            version=version,
            magic=magic,
        )

    def _pack(self):
        return (self.magic, self.erase_count, int(self.status), 0xFF, self.version, 0xFF)

    @property
    def is_erased(self) -> bool:
        return self.magic == ERASED_MAGIC


@dataclass
class DataItemHeader(BinaryRecord):
    FORMAT = "<BBHHBBHBBII"

    status: DataItemStatus | int = DataItemStatus.EMPTY
    pnum: int = 0
    offset: int = 0
    group_name_size: int = 0
    name_size: int = 0
    value_size: int = 0
    index: int = 0
    item_type: DataItemType | int = DataItemType.RAW_DATA
    sequence_number: int = 0
    hash_name: int = 0

    @classmethod
    def _unpack(cls, fields, offset):
        (
            status,
            pnum,
            _,
            item_offset,
            group_name_size,
            name_size,
            value_size,
            index,
            item_type,
            sequence_number,
            hash_name,
        ) = fields
        return cls(
            status=_member_or_value(DataItemStatus, status),
            pnum=pnum,
            offset=item_offset,
            group_name_size=group_name_size,
            name_size=name_size,
            value_size=value_size,
            index=index,
            item_type=_member_or_value(DataItemType, item_type),
            sequence_number=sequence_number,
            hash_name=hash_name,
        )

    def _pack(self):
        return (
            int(self.status),
            self.pnum,
            0xFFFF,
            self.offset,
            self.group_name_size,
            self.name_size,
            self.value_size,
            self.index,
            int(self.item_type),
            self.sequence_number,
            self.hash_name,
        )


def _read_name(f, size: int, what: str) -> str:
    offset = f.tell()
    raw = read_exact(f, size, what)
    try:
        return raw.split(b"\x00", 1)[0].decode("utf-8")
    except UnicodeDecodeError:
        raise DecodeError(f"{what} is not valid UTF-8: {raw!r}", offset)


@dataclass
class DataItem:
    header: DataItemHeader
    group: str = ""
    name: str = ""
    value: bytes = b""
    checksum: int = 0

    def __repr__(self):
        return f"DataItem({self.group}/{self.name}, {_name(self.status)})"

    @property
    def status(self):
        return self.header.status

    @property
    def index(self) -> int:
        return self.header.index

    @property
    def item_size(self) -> int:
        header = self.header
        return (
            DataItemHeader.binary_size()
            + header.group_name_size
            + header.name_size
            + header.value_size
            + 2
        )

    @classmethod
    def read(cls, f):
        """Read an item, only the header if the slot holds no stored item"""
        header = DataItemHeader.read(f)
        if header.status not in STORED_STATUSES:
            return cls(header)
        group = _read_name(f, header.group_name_size, "NVDM group name")
        name = _read_name(f, header.name_size, "NVDM item name")
        value = read_exact(f, header.value_size, f"value of NVDM item {name}")
        checksum = int.from_bytes(read_exact(f, 2, "NVDM item checksum"), "little")
        return cls(header, group, name, value, checksum)


@dataclass
class Block:
    """Header of one erase block and the items read from it"""

    pnum: int
    header: PebHeader
    items: list[DataItem]

    @property
    def is_active(self) -> bool:
        return not self.header.is_erased and self.header.status == PebStatus.ACTIVED

    @property
    def status_name(self) -> str:
        return "ERASED" if self.header.is_erased else _name(self.header.status)


class Nvdm(object):
    """Stored items of all active blocks, in flash order"""

    def __init__(self, blocks=None, peb_size=DEFAULT_PEB_SIZE):
        self.blocks: list[Block] = blocks or []
        self.peb_size = peb_size

    def __repr__(self):
        return f"Nvdm({len(self.blocks)} blocks, {len(self.items)} items)"

    @property
    def items(self) -> list[DataItem]:
        return [item for block in self.blocks for item in block.items]

    def groups(self) -> list[str]:
        """Group names in order of first appearance"""
        return list(dict.fromkeys(item.group for item in self.items))

    def items_by_group(self, group: str, statuses=None) -> list[DataItem]:
        """Items of group, restricted to statuses (a status or a tuple) if set"""
        if isinstance(statuses, DataItemStatus):
            statuses = (statuses,)
        return [
            item
            for item in self.items
            if item.group == group and (statuses is None or item.status in statuses)
        ]

    def get_item(
        self, group: str, name: str, status: DataItemStatus = DataItemStatus.VALID
    ) -> DataItem | None:
        for item in self.items_by_group(group, status):
            if item.name == name:
                return item
        return None

    @classmethod
    def read(cls, f, peb_size=DEFAULT_PEB_SIZE):
        if peb_size <= PebHeader.binary_size() + PEB_TAIL:
            raise FatalError(f"PEB size {peb_size:#x} is too small")
        start = f.tell()
        size = f.seek(0, io.SEEK_END) - start
        if size % peb_size:
            log.warning(
                f"NVDM data of {size:#x} bytes isn't a multiple of the PEB "
                f"size {peb_size:#x}, ignoring the last {size % peb_size:#x} bytes"
            )
        blocks = []
        for pnum in range(size // peb_size):
            f.seek(start + pnum * peb_size)
            header = PebHeader.read(f)
            block = Block(pnum, header, [])
            blocks.append(block)
            if not block.is_active:
                log.debug(f"PEB {pnum} is {_name(header.status)}, skipping")
                continue
            used = 0
            while used < peb_size - PEB_TAIL:
                item = DataItem.read(f)
                if item.status not in STORED_STATUSES:
                    break
                block.items.append(item)
                used += item.item_size
        return cls(blocks, peb_size)


def load_nvdm(source: ImageSource, peb_size: int = DEFAULT_PEB_SIZE) -> Nvdm:
    """Parse the NVDM store of a VAR partition from a file path, bytes or stream"""
    data, name = get_bytes(source)
    nvdm = Nvdm.read(io.BytesIO(data), peb_size)
    log.debug(f"NVDM {name or ''}: {nvdm!r}")
    return nvdm
