# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

import os

import hexdump

from .bin_image import (
    BootImage,
    OTAImage,
    Verification,
    load_boot_image,
    load_ota_image,
)
from .config import get_key
from .enums import HashAlgo, PartitionType
from .flash import CALIBRATION_SIZE, SplitStatus, combine_flash, split_flash
from .headers import Encrypted
from .keys import (
    DEFAULT_OTA_KEY,
    FLASH_PATTERN,
    HASH_KEY,
    KEY_PAIR_000,
    KEY_PAIR_001,
    KEY_PAIR_003,
)
from .logger import log
from .nvdm import DEFAULT_PEB_SIZE, DataItemStatus, load_nvdm
from .partition import load_partition_table
from .relink import Relinker, write_elf
from .sysctrl import SystemData
from .targets import DEFAULT_CHIP
from .util import FatalError, ImageSource, get_bytes, hexify

# File names used when splitting a flash image
PARTITION_FILE_NAMES = {
    PartitionType.PARTTAB: "partition.bin",
    PartitionType.BOOT: "boot.bin",
    PartitionType.FW1: "fw1.bin",
    PartitionType.FW2: "fw2.bin",
    PartitionType.SYS: "sysdata.bin",
    PartitionType.CAL: "calibration.bin",
    PartitionType.USER: "user.bin",
    PartitionType.VAR: "var.bin",
    PartitionType.MP: "mp.bin",
    PartitionType.RDP: "reserved.bin",
}


def _title(title: str) -> None:
    log.print()
    log.print(title)
    log.print("=" * len(title))


def _key_str(key) -> str:
    return "not set" if key is None else hexify(key, uppercase=False)


def _print_sections(sections) -> None:
    headers_str = "{:>7}  {:>8}  {:>7}  {:>10}  {:>10}  {:>10}"
    log.print(
        headers_str.format(
            "Section", "Type", "Length", "Load addr", "Entry", "File offs"
        )
    )
    log.print(f"{'-' * 7}  {'-' * 8}  {'-' * 7}  {'-' * 10}  {'-' * 10}  {'-' * 10}")
    format_str = "{:7}  {:>8}  {:#07x}  {:#010x}  {:>10}  {:#010x}"
    for idx, (section, loadable) in enumerate(sections):
        entry = section.entry.entry_address
        log.print(
            format_str.format(
                idx,
                section.header.sect_type.name,
                len(section.data),
                section.entry.load_address,
                "not set" if entry is None else f"{entry:#010x}",
                loadable.file_offset,
            )
        )


def ota_info(input: ImageSource, key: bytes | None = None) -> OTAImage:
    """
    Display detailed information about an OTA (application) image.

    Args:
        input: Path to the image file, opened file-like object, or the image
            data as bytes.
        key: Key to verify the signatures with, the default OTA key if None.

    Returns:
        The decoded image with its verification flags set.
    """
    image = load_ota_image(input, key)

    _title("OTA Image")
    log.print(f"OTA signature: {_key_str(image.ota_signature)} ({image.signature_ok})")
    log.print(f"Hash public key: {_key_str(image.keyblock.hash_pubkey)}")
    for i, public_key in enumerate(image.public_keys):
        if public_key is not None:
            log.print(f"Public key {i}: {_key_str(public_key)}")
    checksum = "not set" if image.checksum is None else f"{image.checksum:#010x}"
    log.print(f"Checksum: {checksum} ({image.checksum_ok})")
    log.print(f"Subimages: {len(image.subimages)}")

    loadables = list(image.sections_with_offsets())
    offsets, _ = image.layout()
    for index, subimage in enumerate(image.subimages):
        header = subimage.header
        _title(f"Subimage {index}: {header.img_type.name}")
        log.print(f"Offset: {offsets[index]:#x}")
        log.print(f"Segment size: {header.segment_size:#x}")
        log.print(f"Serial: {header.serial}")
        log.print(f"Encrypted: {'yes' if header.is_encrypt else 'no'}")
        if header.user_key1 is not None:
            log.print(f"User key 1: {_key_str(header.user_key1)}")
        if header.user_key2 is not None:
            log.print(f"User key 2: {_key_str(header.user_key2)}")
        if subimage.is_encrypted:
            log.print(f"Encrypted payload: {len(subimage.body):#x} bytes")
        else:
            fst = subimage.fst
            log.print(
                "Encryption: "
                + ("disabled" if fst.enc_algo is None else fst.enc_algo.name)
            )
            log.print(
                "Hashing: "
                + ("disabled" if fst.hash_algo is None else fst.hash_algo.name)
            )
            log.print()
            _print_sections(
                zip(
                    subimage.sections,
                    (s for i, s in loadables if i == index),
                )
            )
        log.print()
        log.print(f"Hash: {_key_str(subimage.hash)} ({subimage.hash_ok})")
    return image


def boot_info(input: ImageSource, key: bytes | None = None) -> BootImage:
    """
    Display information about a boot image.

    Args:
        input: Path to the image file, opened file-like object, or the image
            data as bytes.
        key: HMAC key of the image hash, the default hash key if None.
    """
    image = load_boot_image(input, key)

    _title("Boot Image")
    log.print(f"Segment size: {image.header.segment_size:#x}")
    log.print(f"Serial: {image.header.serial}")
    log.print(f"Text length: {len(image.text):#x}")
    log.print(f"Load address: {image.entry.load_address:#010x}")
    entry = image.entry.entry_address
    log.print(
        f"Entry point: {entry:#010x}" if entry is not None else "Entry point not set"
    )
    log.print(f"Hash: {_key_str(image.hash)} ({image.hash_ok})")
    return image


def pt_info(input: ImageSource, key: bytes | None = None, offset: int = 0):
    """
    Display the records of a partition table image.

    Args:
        input: Path to the image file, opened file-like object, or the image
            data as bytes.
        key: HMAC key of the table hash, the default hash key if None.
        offset: Position of the table in input, 0x20 for a flash image.
    """
    pt_image = load_partition_table(input, key, offset)

    _title("Partition Table")
    log.print(f"Hash: {_key_str(pt_image.hash)} ({pt_image.hash_ok})")
    if isinstance(pt_image.pt, Encrypted):
        log.warning("Partition table is encrypted, records can't be displayed")
        return pt_image

    pt = pt_image.pt
    log.print(f"eFWV: {pt.efwv}")
    log.print(f"Firmware indexes: fw1 {pt.fw1_idx}, fw2 {pt.fw2_idx}")
    log.print(f"Key export: {pt.key_exp_op.name}")
    for name, trap in (("OTA trap", pt.ota_trap), ("MP trap", pt.mp_trap)):
        if trap.valid:
            log.print(
                f"{name}: port {trap.port}, pin {trap.pin}, level {trap.level}"
            )
        else:
            log.print(f"{name}: disabled")
    log.print(f"User data: {len(pt.user_bin):#x} bytes")
    log.print()

    headers_str = "{:>6}  {:>8}  {:>10}  {:>10}  {:>8}  {}"
    log.print(headers_str.format("Record", "Type", "Start", "Length", "Dbg skip", "Hash key"))
    log.print(f"{'-' * 6}  {'-' * 8}  {'-' * 10}  {'-' * 10}  {'-' * 8}  {'-' * 8}")
    format_str = "{:6}  {:>8}  {:#010x}  {:#010x}  {:>8}  {}"
    for idx, record in enumerate(pt.records):
        log.print(
            format_str.format(
                idx,
                record.part_type.name,
                record.start_addr,
                record.length,
                "yes" if record.dbg_skip else "no",
                _key_str(record.hash_key),
            )
        )
    return pt_image


def resign(
    input: ImageSource,
    output: str,
    key: bytes | None = None,
    hash_algo: HashAlgo | None = None,
    hash_pubkey: bytes | None = None,
    verify_key: bytes | None = None,
) -> OTAImage:
    """
    Sign an OTA image with a new key and write it to output.

    Args:
        input: The OTA image as path, opened file-like object or bytes.
        output: Path to the output file.
        key: Signing key, the default OTA key if None.
        hash_algo: Switch all subimages to this hash algorithm, keep the
            current one if None.
        hash_pubkey: Replace the hash public key of the key block.
        verify_key: Key the input image is checked against, the default OTA
            key if None.
    """
    image = load_ota_image(input, verify_key)
    if image.signature_ok == Verification.FAIL:
        log.warning("Input image signature doesn't verify, resigning anyway")
    image.resign(DEFAULT_OTA_KEY if key is None else key, hash_algo, hash_pubkey)
    data = image.to_bytes()
    with open(output, "wb") as f:
        f.write(data)
    log.print(f"Wrote {len(data):#x} bytes to file '{output}'.")
    return image


def split_flash_image(
    input: ImageSource,
    output_dir: str,
    include_common: bool = False,
    decode: bool = True,
    hash_key: bytes | None = None,
    ota_key: bytes | None = None,
):
    """
    Write every partition of a flash image to its own file in output_dir.

    Args:
        input: The flash image as path, opened file-like object or bytes.
        output_dir: Directory for the partition files, created if missing.
        include_common: Also write the calibration pattern plus partition
            table and the system data block.
        decode: Decode and verify complete partitions.
        hash_key, ota_key: Verification keys, the defaults if None.
    """
    data, _ = get_bytes(input)
    if not os.path.isdir(output_dir):
        log.debug(f"Creating directory {output_dir}")
        os.makedirs(output_dir)

    open_files = []

    def sink_for(record):
        name = PARTITION_FILE_NAMES[record.part_type]
        f = open(os.path.join(output_dir, name), "wb")
        open_files.append(f)
        return f

    try:
        entries = split_flash(data, sink_for, decode, hash_key, ota_key)
    finally:
        for f in open_files:
            f.close()

    _title("Partitions")
    for idx, entry in enumerate(entries):
        record = entry.record
        line = _split_entry_line(idx, entry)
        if entry.status == SplitStatus.SKIPPED:
            log.print(line)
            continue
        name = PARTITION_FILE_NAMES[record.part_type]
        if entry.status == SplitStatus.CORRUPT:
            log.print(f"{line} -> {name} ({entry.error})")
            continue
        verified = _verification_summary(entry.partition)
        log.print(f"{line} -> {name}{verified}")

    if include_common:
        chip = DEFAULT_CHIP
        common = (
            ("partition.bin", 0, chip.SYSTEM_DATA_OFFSET),
            (
                "sysdata.bin",
                chip.SYSTEM_DATA_OFFSET,
                chip.SYSTEM_DATA_OFFSET + chip.SYSTEM_DATA_SIZE,
            ),
        )
        for name, start, end in common:
            if end > len(data):
                log.warning(f"Flash image too short for {name}, skipping")
                continue
            with open(os.path.join(output_dir, name), "wb") as f:
                f.write(data[start:end])
            log.print(f"Common block {start:#08x}-{end:#08x} -> {name}")
    return entries


def _split_entry_line(idx, entry) -> str:
    record = entry.record
    return (
        f"[{idx}] {record.part_type.name:<8} offset {record.start_addr:#08x}, "
        f"length {record.length:#08x}: {entry.status}"
    )


def _verification_summary(partition) -> str:
    if partition is None or partition.is_raw:
        return ""
    content = partition.content
    if isinstance(content, OTAImage):
        flags = [content.signature_ok, content.checksum_ok]
        flags += [s.hash_ok for s in content.subimages]
        ok = Verification.FAIL not in flags
    elif isinstance(content, SystemData):
        return ""
    else:
        ok = content.hash_ok != Verification.FAIL
    return " (verified)" if ok else " (verification failed)"


def combine_flash_image(
    output: str,
    pt: ImageSource,
    boot: ImageSource | None = None,
    fw1: ImageSource | None = None,
    fw2: ImageSource | None = None,
    user: ImageSource | None = None,
    system: ImageSource | None = None,
    flash_size: int | None = None,
    allow_partial: bool = False,
    pt_has_calibration: bool = False,
    hash_key: bytes | None = None,
) -> None:
    """
    Combine a partition table and partition images into a flash image.

    Args:
        output: Path to the output file.
        pt: Partition table image, optionally prefixed with the calibration
            pattern as found at the start of a flash image.
        boot, fw1, fw2, user: Partition contents.
        system: System data block, a default one is used if None.
        flash_size: Reject partitions past this size and pad the output to it.
        allow_partial: Skip partitions that don't fit instead of aborting.
        pt_has_calibration: pt starts with the 32 byte calibration block.
        hash_key: Key the partition table hash is checked against, the
            default hash key if None.
    """
    pt_data, _ = get_bytes(pt)
    calibration = None
    if pt_has_calibration:
        calibration = pt_data[:16]
        pt_data = pt_data[DEFAULT_CHIP.PARTITION_TABLE_OFFSET :]
    pt_image = load_partition_table(pt_data, hash_key)
    if pt_image.hash_ok == Verification.FAIL:
        log.warning("Partition table hash doesn't verify")

    partitions = {}
    for part_type, source in (
        (PartitionType.BOOT, boot),
        (PartitionType.FW1, fw1),
        (PartitionType.FW2, fw2),
        (PartitionType.USER, user),
    ):
        if source is None:
            continue
        if pt_image.get_record(part_type) is None:
            raise FatalError(
                f"Partition table has no {part_type.name} record for the given image"
            )
        partitions[part_type] = source

    kwargs = {} if calibration is None else {"calibration": calibration}
    combine_flash(
        pt_image,
        partitions,
        output=output,
        flash_size=flash_size,
        allow_partial=allow_partial,
        system=system,
        **kwargs,
    )


def _print_key_notes(pt_image) -> None:
    keyblock = pt_image.keyblock
    log.print(f"Encryption public key: {_key_str(keyblock.enc_pubkey)}")
    if keyblock.enc_pubkey == KEY_PAIR_000.public:
        log.note("Partition table uses the default encryption key")
    log.print(f"Hash public key: {_key_str(keyblock.hash_pubkey)}")
    if keyblock.hash_pubkey == KEY_PAIR_001.public:
        log.note("Partition table uses the default hash key")
    if isinstance(pt_image.pt, Encrypted):
        return
    for idx, record in enumerate(pt_image.pt.records):
        if record.hash_key == KEY_PAIR_003.private:
            log.note(f"Record {idx} ({record.part_type.name}) uses a default hash key")


def _print_system_data(system: SystemData) -> None:
    _title("System Data")
    if system.ota2_address is None:
        log.print("OTA2 address: not set")
    else:
        log.print(f"OTA2 address: {system.ota2_address:#x}")
    if system.ota2_size is not None:
        log.print(f"OTA2 size: {system.ota2_size:#x}")
    force = system.force_old_image
    if force.active:
        log.print(f"Force old image: port {force.port}, pin {force.pin}")
    else:
        log.print("Force old image: disabled")
    spi = system.spi_config
    log.print(f"SPI: {spi.io_mode.name}, {spi.io_speed.name}")
    info = system.flash_info
    log.print(f"Flash: id {info.flash_id:#06x}, size {info.flash_size.name}")
    if system.ulog_baud != 0xFFFFFFFF:
        log.print(f"Log UART baud rate: {system.ulog_baud}")


def flash_info(
    input: ImageSource,
    hash_key: bytes | None = None,
    ota_key: bytes | None = None,
    pt_only: bool = False,
):
    """
    Display the calibration pattern, partition table, system data and the
    partitions of a flash image.

    Args:
        input: The flash image as path, opened file-like object or bytes.
        hash_key: Key of the partition table and boot image hashes, the
            default hash key if None.
        ota_key: Key of the OTA image signatures, the default OTA key if None.
        pt_only: Stop after the partition table.

    Returns:
        The partition table image if pt_only is set or the table is
        encrypted, otherwise the SplitEntry list of the partitions.
    """
    data, _ = get_bytes(input)
    chip = DEFAULT_CHIP

    if not pt_only:
        calibration = data[:CALIBRATION_SIZE]
        _title("Flash")
        log.print(f"Size: {len(data):#x}")
        log.print(
            f"Calibration pattern: {hexify(calibration, uppercase=False)} "
            f"({'OK' if calibration == FLASH_PATTERN else 'unknown pattern'})"
        )

    pt_image = pt_info(data, hash_key, chip.PARTITION_TABLE_OFFSET)
    log.print()
    _print_key_notes(pt_image)
    if pt_only or isinstance(pt_image.pt, Encrypted):
        return pt_image

    end = chip.SYSTEM_DATA_OFFSET + chip.SYSTEM_DATA_SIZE
    if len(data) < end:
        log.warning("Flash image too short for the system data block")
    else:
        _print_system_data(SystemData.from_bytes(data[chip.SYSTEM_DATA_OFFSET : end]))

    entries = split_flash(data, hash_key=hash_key, ota_key=ota_key)
    _title("Partitions")
    for idx, entry in enumerate(entries):
        line = _split_entry_line(idx, entry)
        if entry.status == SplitStatus.CORRUPT:
            line += f" ({entry.error})"
        elif entry.status == SplitStatus.OK and entry.partition is None:
            line += " (erased)"
        else:
            line += _verification_summary(entry.partition)
        log.print(line)
    return entries


NVDM_STATUS_NAMES = {
    DataItemStatus.DELETE: "deleted",
    DataItemStatus.VALID: "valid",
    DataItemStatus.WRITING: "writing",
}


def nvdm_info(
    input: ImageSource,
    peb_size: int = DEFAULT_PEB_SIZE,
    list_groups: bool = False,
    only_valid: bool = False,
    group: str | None = None,
    item: str | None = None,
    from_flash: bool = False,
    hash_key: bytes | None = None,
):
    """
    Display the items of the NVDM store in a VAR partition.

    Args:
        input: The VAR partition, or a flash image with from_flash, as path,
            opened file-like object or bytes.
        peb_size: Erase block size of the store.
        list_groups: Only print the group names.
        only_valid: Skip deleted items.
        group: Only print this group.
        item: Only print items with this name.
        from_flash: input is a flash image, the VAR partition is located by
            its partition table record.
        hash_key: Key of the partition table hash with from_flash.

    Returns:
        The decoded store.
    """
    data, _ = get_bytes(input)
    if from_flash:
        pt_image = load_partition_table(
            data, hash_key, DEFAULT_CHIP.PARTITION_TABLE_OFFSET
        )
        if isinstance(pt_image.pt, Encrypted):
            raise FatalError("Partition table is encrypted, can't locate the VAR partition")
        record = pt_image.get_record(PartitionType.VAR)
        if record is None:
            raise FatalError("Partition table has no VAR record")
        data = data[record.start_addr : record.end_addr]
        log.print(f"VAR partition at {record.start_addr:#x}, {len(data):#x} bytes")

    nvdm = load_nvdm(data, peb_size)

    _title("NVDM")
    log.print(f"PEB size: {nvdm.peb_size:#x}")
    for block in nvdm.blocks:
        log.print(
            f"[{block.pnum}] {block.status_name}, erase count {block.header.erase_count}, "
            f"{len(block.items)} items"
        )

    groups = sorted(nvdm.groups())
    if list_groups:
        _title("Groups")
        for name in groups:
            log.print(name)
        return nvdm

    if group is not None:
        if group not in groups:
            log.warning(f"Group '{group}' not found")
        groups = [group]
    statuses = (DataItemStatus.VALID,)
    if not only_valid:
        statuses += (DataItemStatus.DELETE,)

    for name in groups:
        items = sorted(nvdm.items_by_group(name, statuses), key=lambda i: i.index)
        if item is not None:
            items = [i for i in items if i.name == item]
        if not items:
            continue
        _title(f"Group {name}")
        for data_item in items:
            log.print(
                f"[{data_item.index}] {data_item.name} "
                f"({NVDM_STATUS_NAMES[data_item.status]})"
            )
            if data_item.value:
                log.print(hexdump.hexdump(data_item.value, result="return"))
            else:
                log.print("(empty)")
    return nvdm


def relink(
    input: ImageSource,
    output: str,
    boot: bool = False,
    cap_length: bool = False,
    memory_map=None,
    hash_key: bytes | None = None,
    ota_key: bytes | None = None,
):
    """
    Rebuild an ELF file from the sections of an OTA or boot image.

    Args:
        input: The image as path, opened file-like object or bytes.
        output: Path to the ELF file.
        boot: input is a boot image instead of an OTA image.
        cap_length: Use the logical section lengths as segment memory sizes.
        memory_map: List of MemoryRegion, the chip's default map if None.
        hash_key, ota_key: Keys the boot or OTA image is verified with.
    """
    if boot:
        image = load_boot_image(input, hash_key)
        entry = image.entry.entry_address
    else:
        image = load_ota_image(input, ota_key)
        sections = image.subimages[0].sections if image.subimages else []
        entry = sections[0].entry.entry_address if sections else None

    segments = Relinker(memory_map, cap_length).relink(image)
    if not segments:
        raise FatalError("Image contains no loadable sections")

    _title("Segments")
    headers_str = "{:>7}  {:<20}  {:>10}  {:>8}  {:>8}  {:>10}  {:>5}"
    log.print(
        headers_str.format(
            "Segment", "Name", "Vaddr", "Filesz", "Memsz", "File offs", "Flags"
        )
    )
    log.print(
        f"{'-' * 7}  {'-' * 20}  {'-' * 10}  {'-' * 8}  {'-' * 8}  {'-' * 10}  {'-' * 5}"
    )
    format_str = "{:7}  {:<20}  {:#010x}  {:#08x}  {:#08x}  {:#010x}  {:>5}"
    for idx, segment in enumerate(segments):
        flags = "".join(
            c if segment.flags & bit else "-" for c, bit in (("R", 4), ("W", 2), ("X", 1))
        )
        log.print(
            format_str.format(
                idx,
                segment.name,
                segment.vaddr,
                segment.filesz,
                segment.memsz,
                segment.file_offset,
                flags,
            )
        )

    size = write_elf(segments, output, entry or 0)
    log.print()
    log.print(f"Wrote {size:#x} bytes to file '{output}'.")
    return segments


def version():
    from . import __version__

    log.print(__version__)


def default_keys(cfg):
    """Return (hash key, OTA key) from the configuration or the defaults"""
    return get_key(cfg, "hash_key", HASH_KEY), get_key(cfg, "ota_key", DEFAULT_OTA_KEY)
