# SPDX-FileCopyrightText: 2024-2025 amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later
"""
Partition table image, stored at offset 0x20 of the flash.

The table maps every partition type to a flash range. Partition type is the
key of the table, there is at most one record per type.
"""

from __future__ import annotations

import io
import struct
from dataclasses import dataclass, field

from . import crypto
from .bin_image import HASH_SIZE, Verification
from .enums import HashAlgo, ImageType, KeyExportOp, PartitionType
from .headers import BinaryRecord, Encrypted, ImageHeader, KeyBlock
from .keys import HASH_KEY
from .logger import log
from .util import (
    BuildError,
    DecodeError,
    ImageSource,
    align_up,
    fill_data,
    get_bytes,
    optional_data,
    read_exact,
)

# Largest user binary the vendor image tool emits
MAX_USER_BIN = 0x100


@dataclass
class TrapConfig:
    """GPIO trap packed into 16 bits: pin 0-4, port 5-7, level 8, valid 15"""

    valid: bool = False
    level: int = 0
    port: int = 0
    pin: int = 0

    @classmethod
    def from_int(cls, value: int) -> TrapConfig:
        return cls(
            valid=bool(value >> 15 & 1),
            level=value >> 8 & 1,
            port=value >> 5 & 0x7,
            pin=value & 0x1F,
        )

    def to_int(self) -> int:
        return (
            int(self.valid) << 15
            | (self.level & 1) << 8
            | (self.port & 0x7) << 5
            | (self.pin & 0x1F)
        )


@dataclass
class Record(BinaryRecord):
    FORMAT = "<IIBB6sB15s32s"

    part_type: PartitionType = PartitionType.PARTTAB
    start_addr: int = 0
    length: int = 0
    dbg_skip: bool = False
    hash_key: bytes | None = None

    @property
    def end_addr(self):
        return self.start_addr + self.length

    @classmethod
    def _unpack(cls, fields, offset):
        start_addr, length, part_type, dbg_skip, _, key_valid, _, hash_key = fields
        return cls(
            part_type=PartitionType.decode(part_type, offset + 8),
            start_addr=start_addr,
            length=length,
            dbg_skip=bool(dbg_skip),
            hash_key=optional_data(hash_key) if key_valid & 1 else None,
        )

    def _pack(self):
        return (
            self.start_addr,
            self.length,
            self.part_type,
            int(self.dbg_skip),
            b"\xff" * 6,
            int(self.hash_key is not None),
            b"\xff" * 15,
            fill_data(self.hash_key, 32),
        )


@dataclass
class PartTab:
    """Partition table body: header fields, records and user data"""

    HEADER_FORMAT = "<BBBBBBB3sHHBBI12s"

    records: list[Record] = field(default_factory=list)
    rma_w_state: int = 0xFF
    rma_ov_state: int = 0xFF
    efwv: int = 0
    fw1_idx: int = 0
    fw2_idx: int = 0
    ota_trap: TrapConfig = field(default_factory=TrapConfig)
    mp_trap: TrapConfig = field(default_factory=TrapConfig)
    key_exp_op: KeyExportOp = KeyExportOp.NONE
    user_ext: bytes = b"\xff" * 12
    user_bin: bytes = b""

    @classmethod
    def header_size(cls):
        return struct.calcsize(cls.HEADER_FORMAT)

    def get_record(self, part_type: PartitionType) -> Record | None:
        return next((r for r in self.records if r.part_type == part_type), None)

    def has_record(self, part_type: PartitionType) -> bool:
        return self.get_record(part_type) is not None

    def add_record(self, record: Record):
        if self.has_record(record.part_type):
            raise BuildError(f"Partition table already has a {record.part_type.name} record")
        self.records.append(record)

    def set_record(self, record: Record):
        """Add record, replacing the one of the same type if present"""
        self.remove_record(record.part_type)
        self.records.append(record)

    def remove_record(self, part_type: PartitionType):
        self.records = [r for r in self.records if r.part_type != part_type]

    def build_size(self) -> int:
        return self.header_size() + len(self.records) * Record.binary_size() + len(
            self.user_bin
        )

    @classmethod
    def read(cls, f):
        offset = f.tell()
        (
            rma_w_state,
            rma_ov_state,
            efwv,
            _,
            num,
            fw1_idx,
            fw2_idx,
            _,
            ota_trap,
            mp_trap,
            _,
            key_exp_op,
            user_len,
            user_ext,
        ) = struct.unpack(
            cls.HEADER_FORMAT, read_exact(f, cls.header_size(), "partition table")
        )
        pt = cls(
            rma_w_state=rma_w_state,
            rma_ov_state=rma_ov_state,
            efwv=efwv,
            fw1_idx=fw1_idx,
            fw2_idx=fw2_idx,
            ota_trap=TrapConfig.from_int(ota_trap),
            mp_trap=TrapConfig.from_int(mp_trap),
            key_exp_op=KeyExportOp.decode(key_exp_op, offset + 15),
            user_ext=user_ext,
        )
        # num doesn't count the boot record
        for _ in range(num + 1):
            record_offset = f.tell()
            record = Record.read(f)
            if pt.has_record(record.part_type):
                raise DecodeError(
                    f"Duplicate {record.part_type.name} partition record", record_offset
                )
            pt.records.append(record)
        if user_len > MAX_USER_BIN:
            log.warning(
                f"User data length {user_len:#x} exceeds {MAX_USER_BIN:#x}, truncating"
            )
            user_len = MAX_USER_BIN
        pt.user_bin = read_exact(f, user_len, "partition table user data")
        return pt

    def write(self, f):
        if not self.records:
            raise BuildError("Empty partition table")
        if len(self.user_bin) > MAX_USER_BIN:
            raise BuildError(
                f"User data of {len(self.user_bin):#x} bytes exceeds {MAX_USER_BIN:#x}"
            )
        f.write(
            struct.pack(
                self.HEADER_FORMAT,
                self.rma_w_state,
                self.rma_ov_state,
                self.efwv,
                0,
                len(self.records) - 1,
                self.fw1_idx,
                self.fw2_idx,
                b"\xff" * 3,
                self.ota_trap.to_int(),
                self.mp_trap.to_int(),
                0xFF,
                self.key_exp_op,
                len(self.user_bin),
                fill_data(self.user_ext, 12),
            )
        )
        for record in self.records:
            record.write(f)
        f.write(self.user_bin)


class PartitionTableImage(object):
    """Key block, image header, partition table padded to the segment size and
    a HMAC-SHA256 hash over everything before it."""

    def __init__(self, pt=None, keyblock=None, header=None, hash=None):
        self.keyblock = keyblock or KeyBlock()
        self.header = header or ImageHeader(img_type=ImageType.PARTTAB)
        self.pt: PartTab | Encrypted = PartTab() if pt is None else pt
        self.hash = hash
        self.hash_ok = Verification.SKIPPED

    def __repr__(self):
        if isinstance(self.pt, Encrypted):
            return f"PartitionTableImage({self.pt!r})"
        types = ", ".join(r.part_type.name for r in self.pt.records)
        return f"PartitionTableImage({types})"

    @property
    def records(self) -> list[Record]:
        return [] if isinstance(self.pt, Encrypted) else self.pt.records

    def get_record(self, part_type: PartitionType) -> Record | None:
        return None if isinstance(self.pt, Encrypted) else self.pt.get_record(part_type)

    def build_segment_size(self):
        if isinstance(self.pt, Encrypted):
            return len(self.pt)
        return align_up(self.pt.build_size(), 0x20)

    def update_sizes(self):
        self.header.is_encrypt = isinstance(self.pt, Encrypted)
        self.header.segment_size = self.build_segment_size()

    def _signed_end(self):
        return KeyBlock.binary_size() + ImageHeader.binary_size() + self.header.segment_size

    def build(self, key: bytes = HASH_KEY):
        if key is None:
            raise BuildError("A key is required to hash the partition table")
        self.update_sizes()
        data = self.to_bytes()
        self.hash = crypto.hmac_sha256(key, data[: self._signed_end()])
        self.verify(key)

    def verify(self, key: bytes = HASH_KEY, data: bytes | None = None) -> bool:
        if data is None:
            data = self.to_bytes()
        end = self._signed_end()
        if self.hash is None or end > len(data):
            self.hash_ok = Verification.FAIL
        else:
            self.hash_ok = Verification.of(
                crypto.verify_hash(HashAlgo.SHA256, data[:end], self.hash, key)
            )
        return self.hash_ok != Verification.FAIL

    @classmethod
    def read(cls, f):
        keyblock = KeyBlock.read(f)
        header = ImageHeader.read(f)
        start = f.tell()
        if header.is_encrypt:
            pt = Encrypted(read_exact(f, header.segment_size, "encrypted partition table"))
        else:
            pt = PartTab.read(f)
        # the table is padded up to the segment size
        if f.tell() < start + header.segment_size:
            f.seek(start + header.segment_size)
        stored_hash = read_exact(f, HASH_SIZE, "partition table hash")
        return cls(pt, keyblock, header, optional_data(stored_hash))

    def write(self, f):
        start = f.tell()
        self.keyblock.write(f)
        self.header.write(f)
        body = io.BytesIO()
        self.pt.write(body)
        f.write(fill_data(body.getvalue(), self.header.segment_size))
        f.write(fill_data(self.hash, HASH_SIZE))
        return f.tell() - start

    def to_bytes(self) -> bytes:
        f = io.BytesIO()
        self.write(f)
        return f.getvalue()


def load_partition_table(
    source: ImageSource, key: bytes | None = None, offset: int = 0
) -> PartitionTableImage:
    """Parse the partition table found at offset of source and verify its hash."""
    data, name = get_bytes(source)
    data = data[offset:]
    pt_image = PartitionTableImage.read(io.BytesIO(data))
    if not pt_image.verify(HASH_KEY if key is None else key, data):
        log.debug(f"Partition table {name or ''} failed verification")
    return pt_image
