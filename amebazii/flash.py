# SPDX-FileCopyrightText: 2024-2025 amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later
"""
Raw flash images.

    0x0000  calibration pattern, 16 bytes 0xFF
    0x0020  partition table image
    0x1000  system data
    0x2000  calibration data and a reserved sector
    0x4000  partitions at the offsets of their partition table records

The partition table is the only authority for the partition offsets.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from enum import Enum
from typing import IO, Callable, NamedTuple

from .bin_image import BootImage, OTAImage, load_boot_image, load_ota_image
from .enums import PartitionType
from .headers import Encrypted
from .keys import FLASH_PATTERN
from .logger import log
from .partition import PartitionTableImage, Record, load_partition_table
from .sysctrl import SystemData
from .targets import DEFAULT_CHIP
from .util import (
    BuildError,
    DecodeError,
    ImageSource,
    RangeError,
    get_bytes,
    is_valid_data,
    read_exact,
)

CALIBRATION_SIZE = 16

# Decoded content type of every partition type, the others are raw bytes
PARTITION_CODECS = {
    PartitionType.PARTTAB: PartitionTableImage,
    PartitionType.BOOT: BootImage,
    PartitionType.FW1: OTAImage,
    PartitionType.FW2: OTAImage,
    PartitionType.SYS: SystemData,
}

# Partitions placed at fixed offsets in front of the first record
FIXED_PARTITIONS = (PartitionType.PARTTAB, PartitionType.SYS)

OTA_PARTITIONS = (PartitionType.FW1, PartitionType.FW2)


def _load_system_data(data: bytes, key: bytes | None = None) -> SystemData:
    # system data carries no hash
    return SystemData.from_bytes(data)


# Parse plus verification, used when decoding partitions of a flash dump
PARTITION_LOADERS: dict[PartitionType, Callable[[bytes, bytes | None], object]] = {
    PartitionType.PARTTAB: load_partition_table,
    PartitionType.BOOT: load_boot_image,
    PartitionType.FW1: load_ota_image,
    PartitionType.FW2: load_ota_image,
    PartitionType.SYS: _load_system_data,
}


@dataclass
class Partition:
    """Content of one flash partition, tagged with its partition type.

    content is the decoded image for the types of PARTITION_CODECS and raw
    bytes for every other type.
    """

    part_type: PartitionType
    content: object

    @property
    def is_raw(self) -> bool:
        return self.part_type not in PARTITION_CODECS

    @classmethod
    def decode(
        cls,
        part_type: PartitionType,
        data: bytes,
        hash_key: bytes | None = None,
        ota_key: bytes | None = None,
    ) -> Partition:
        """Decode and verify, OTA images with ota_key and the others with hash_key"""
        loader = PARTITION_LOADERS.get(part_type)
        if loader is None:
            return cls(part_type, bytes(data))
        key = ota_key if part_type in OTA_PARTITIONS else hash_key
        return cls(part_type, loader(data, key))

    @classmethod
    def from_value(cls, part_type: PartitionType, value) -> Partition:
        """Wrap decoded content, or decode a file path, bytes or stream"""
        codec = PARTITION_CODECS.get(part_type)
        if codec is not None and isinstance(value, codec):
            return cls(part_type, value)
        data, source = get_bytes(value)
        log.debug(
            f"Parsing {part_type.name} partition from "
            f"{'bytes' if source is None else repr(source)} ({len(data):#x} bytes)"
        )
        return cls.decode(part_type, data)

    def to_bytes(self) -> bytes:
        if self.is_raw:
            return bytes(self.content)
        return self.content.to_bytes()


class Flash(object):
    """Calibration pattern and the partitions of a flash image, by type"""

    def __init__(self, pt_image=None, system=None, calibration=FLASH_PATTERN):
        self.calibration = calibration
        self.partitions: dict[PartitionType, Partition] = {}
        if pt_image is not None:
            self.set_partition(PartitionType.PARTTAB, pt_image)
        if system is not None:
            self.set_partition(PartitionType.SYS, system)

    def __repr__(self):
        return "Flash(%s)" % ", ".join(t.name for t in self.partitions)

    @property
    def pt_image(self) -> PartitionTableImage | None:
        partition = self.partitions.get(PartitionType.PARTTAB)
        return None if partition is None else partition.content

    @property
    def system(self) -> SystemData | None:
        partition = self.partitions.get(PartitionType.SYS)
        return None if partition is None else partition.content

    def has_partition(self, part_type: PartitionType) -> bool:
        return part_type in self.partitions

    def get_partition(self, part_type: PartitionType):
        partition = self.partitions.get(part_type)
        return None if partition is None else partition.content

    def set_partition(self, part_type: PartitionType, value):
        self.partitions[part_type] = Partition.from_value(part_type, value)

    def remove_partition(self, part_type: PartitionType):
        self.partitions.pop(part_type, None)

    @classmethod
    def read(cls, f):
        """Decode a complete flash image, partitions located by the partition table"""
        chip = DEFAULT_CHIP
        start = f.tell()
        calibration = read_exact(f, CALIBRATION_SIZE, "calibration pattern")
        flash = cls(calibration=calibration)
        f.seek(start + chip.PARTITION_TABLE_OFFSET)
        flash.set_partition(PartitionType.PARTTAB, PartitionTableImage.read(f))
        f.seek(start + chip.SYSTEM_DATA_OFFSET)
        flash.set_partition(PartitionType.SYS, SystemData.read(f))
        if isinstance(flash.pt_image.pt, Encrypted):
            raise DecodeError(
                "Partition table is encrypted, can't locate the partitions",
                start + chip.PARTITION_TABLE_OFFSET,
            )
        for record in flash.pt_image.records:
            if record.part_type in FIXED_PARTITIONS:
                continue
            f.seek(start + record.start_addr)
            codec = PARTITION_CODECS.get(record.part_type)
            if codec is None:
                content = read_exact(f, record.length, f"{record.part_type.name} partition")
            else:
                content = codec.read(f)
            flash.partitions[record.part_type] = Partition(record.part_type, content)
        return flash

    def _check_record(self, record: Record, size: int, end: int, flash_size):
        name = record.part_type.name
        if record.start_addr < end:
            raise RangeError(
                f"{name} partition at {record.start_addr:#x} overlaps the data "
                f"ending at {end:#x}",
                record.part_type,
            )
        if flash_size is not None and record.end_addr > flash_size:
            raise RangeError(
                f"{name} partition {record.start_addr:#x}-{record.end_addr:#x} "
                f"exceeds the flash size {flash_size:#x}",
                record.part_type,
            )
        if size > record.length:
            raise RangeError(
                f"{name} partition content of {size:#x} bytes exceeds the "
                f"partition length {record.length:#x}",
                record.part_type,
            )

    def to_bytes(self, flash_size: int | None = None, allow_partial=False) -> bytes:
        """
        Lay out the flash image. Raises BuildError if the boot partition or the
        partition table is missing and RangeError if a partition doesn't fit,
        unless allow_partial is set, in which case that partition is skipped.
        """
        chip = DEFAULT_CHIP
        pt_image = self.pt_image
        if pt_image is None:
            raise BuildError("Partition table not found")
        if isinstance(pt_image.pt, Encrypted):
            raise BuildError("Encrypted partition tables can't be used to build a flash image")
        if not self.has_partition(PartitionType.BOOT):
            raise BuildError(
                "Boot partition not found, it is required to build a valid flash image"
            )
        if pt_image.get_record(PartitionType.BOOT) is None:
            raise BuildError("Boot partition has no partition table record")
        system = self.system
        if system is None:
            log.debug("No system data provided, using default")
            system = SystemData()

        of = io.BytesIO()

        def pad_to(offset):
            of.write(b"\xff" * (offset - of.tell()))

        of.write(self.calibration)
        pad_to(chip.PARTITION_TABLE_OFFSET)
        pt_data = pt_image.to_bytes()
        if chip.PARTITION_TABLE_OFFSET + len(pt_data) > chip.SYSTEM_DATA_OFFSET:
            raise BuildError(
                f"Partition table image of {len(pt_data):#x} bytes runs into system data"
            )
        of.write(pt_data)
        pad_to(chip.SYSTEM_DATA_OFFSET)
        system.write(of)
        pad_to(chip.FIRST_PARTITION_OFFSET)

        for record in sorted(pt_image.records, key=lambda r: r.start_addr):
            if record.part_type in FIXED_PARTITIONS:
                continue
            partition = self.partitions.get(record.part_type)
            if partition is None:
                log.debug(f"No content for {record.part_type.name} partition, leaving it erased")
                continue
            data = partition.to_bytes()
            try:
                self._check_record(record, len(data), of.tell(), flash_size)
            except RangeError as e:
                if not allow_partial:
                    raise
                log.warning(f"{e}, skipping partition")
                continue
            pad_to(record.start_addr)
            of.write(data)
            log.print(
                f"{record.part_type.name:<8} {record.start_addr:#010x} "
                f"{len(data):#09x} bytes (partition length {record.length:#x})"
            )

        if flash_size is not None:
            if of.tell() > flash_size:
                raise RangeError(f"Flash image exceeds the flash size {flash_size:#x}")
            pad_to(flash_size)
        return of.getvalue()

    def write(self, f, flash_size: int | None = None, allow_partial=False) -> int:
        data = self.to_bytes(flash_size, allow_partial)
        f.write(data)
        return len(data)


def combine_flash(
    pt_image: ImageSource | PartitionTableImage,
    partitions: dict,
    output: str | None = None,
    flash_size: int | None = None,
    allow_partial: bool = False,
    system: ImageSource | SystemData | None = None,
    calibration: bytes = FLASH_PATTERN,
) -> bytes | None:
    """
    Combine a partition table and partition images into a raw flash image.

    Every partition is written at the offset of its partition table record,
    gaps are filled with 0xFF.

    Args:
        pt_image: The partition table, decoded or as file path, bytes or stream.
        partitions: Mapping of PartitionType to the decoded content of that
            partition (raw bytes for types without a codec), or a file path,
            bytes or stream to decode it from.
        output: Path to the output file. If None, the flash image is returned
            as bytes.
        flash_size: Total flash size. Partitions reaching past it are rejected
            and the output is padded up to it.
        allow_partial: Skip partitions that don't fit instead of aborting.
        system: System data, a default block is used if None.
        calibration: Calibration pattern at offset 0.

    Returns:
        The flash image as bytes if output is None; otherwise, returns None
        after writing to file.
    """
    if len(calibration) != CALIBRATION_SIZE:
        raise BuildError(f"Calibration pattern must be {CALIBRATION_SIZE} bytes")
    flash = Flash(pt_image, system, calibration)
    for part_type, value in partitions.items():
        if part_type in FIXED_PARTITIONS:
            raise BuildError(
                f"{part_type.name} isn't a partition, pass it as its own argument"
            )
        flash.set_partition(part_type, value)

    data = flash.to_bytes(flash_size, allow_partial)
    if output is None:
        log.print(f"Combined {len(data):#x} bytes of flash image.")
        return data
    with open(output, "wb") as of:
        of.write(data)
    log.print(f"Wrote {len(data):#x} bytes to file '{output}'.")
    return None


class SplitStatus(Enum):
    OK = "OK"
    INCOMPLETE = "INCOMPLETE"  # stream ends inside the partition
    SKIPPED = "SKIPPED"  # stream ends before the partition
    CORRUPT = "CORRUPT"  # complete but failed to decode

    def __str__(self):
        return self.value


class SplitEntry(NamedTuple):
    record: Record
    status: SplitStatus
    data: bytes
    partition: Partition | None = None
    error: str | None = None


def split_flash(
    stream: ImageSource,
    sink_for: Callable[[Record], IO[bytes] | None] | None = None,
    decode: bool = True,
    hash_key: bytes | None = None,
    ota_key: bytes | None = None,
) -> list[SplitEntry]:
    """
    Split a raw flash image into its partitions.

    The partition table is read at its fixed offset. Each record that starts
    inside the stream yields exactly record.length bytes, or the rest of the
    stream if it is shorter, in which case the partition is INCOMPLETE and
    not decoded. Records starting past the end are SKIPPED. A complete
    partition that fails to decode is CORRUPT, its bytes are still returned.

    Args:
        stream: The flash image as file path, bytes or stream.
        sink_for: Called with each record, may return a binary sink receiving
            the partition bytes. Sinks are not closed.
        decode: Decode complete partitions of known types.
        hash_key: Key verifying the partition table and boot image, the
            default hash key if None.
        ota_key: Key verifying the OTA images, the default OTA key if None.

    Returns:
        A SplitEntry for every partition table record, in table order.
    """
    data, _ = get_bytes(stream)
    pt_image = load_partition_table(
        data, hash_key, offset=DEFAULT_CHIP.PARTITION_TABLE_OFFSET
    )
    if isinstance(pt_image.pt, Encrypted):
        raise DecodeError(
            "Partition table is encrypted, can't locate the partitions",
            DEFAULT_CHIP.PARTITION_TABLE_OFFSET,
        )

    entries = []
    for record in pt_image.records:
        name = record.part_type.name
        if record.start_addr >= len(data):
            log.warning(
                f"{name} partition at {record.start_addr:#x} starts past the end "
                f"of the flash image ({len(data):#x} bytes), skipping"
            )
            entries.append(SplitEntry(record, SplitStatus.SKIPPED, b""))
            continue

        part_data = data[record.start_addr : record.end_addr]
        partition = error = None
        if len(part_data) < record.length:
            log.warning(
                f"{name} partition is truncated to {len(part_data):#x} of "
                f"{record.length:#x} bytes"
            )
            status = SplitStatus.INCOMPLETE
        else:
            status = SplitStatus.OK
            if decode and not is_valid_data(part_data):
                log.note(f"{name} partition at {record.start_addr:#x} is erased")
            elif decode:
                try:
                    partition = Partition.decode(
                        record.part_type, part_data, hash_key, ota_key
                    )
                except DecodeError as e:
                    log.warning(f"{name} partition can't be decoded: {e}")
                    status = SplitStatus.CORRUPT
                    error = str(e)

        if sink_for is not None:
            sink = sink_for(record)
            if sink is not None:
                sink.write(part_data)
        entries.append(SplitEntry(record, status, part_data, partition, error))
    return entries
