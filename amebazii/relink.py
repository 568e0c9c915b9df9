# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later
"""
Rebuild a loadable ELF file from the sections of an OTA or boot image.

Every section is placed by its load address into the memory regions of the
chip. Sections crossing a region boundary are split, bytes outside all
regions end up in one generic segment.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field

from makeelf.elf import (
    ELF,
    ELFDATA,
    EM,
    ET,
    PT,
    SHF,
    SHT,
    STB,
    STT,
    Elf32_Phdr,
)

from .logger import log
from .targets import DEFAULT_CHIP
from .targets.rtl8720c import PF_W, PF_X
from .util import ConfigError, FatalError


@dataclass(frozen=True)
class AddressRange:
    start: int
    length: int

    @classmethod
    def from_bounds(cls, start: int, end: int) -> AddressRange:
        return cls(start, end - start)

    @property
    def end(self) -> int:
        return self.start + self.length

    def contains(self, address: int) -> bool:
        return self.start <= address < self.end

    def overlaps(self, other: AddressRange) -> bool:
        return self.start < other.end and other.start < self.end

    def __str__(self):
        return f"{self.start:#010x}-{self.end:#010x}"


@dataclass(frozen=True)
class MemoryRegion:
    name: str
    range: AddressRange
    flags: int
    section_name: str
    symbol: str | None = None


def default_memory_map(overrides: dict | None = None) -> list[MemoryRegion]:
    """
    Memory regions of the default chip. overrides maps region names to
    (start, end) tuples replacing the default bounds.
    """
    overrides = overrides or {}
    unknown = set(overrides) - {row[2] for row in DEFAULT_CHIP.MEMORY_MAP}
    if unknown:
        raise ConfigError(f"Unknown memory regions: {', '.join(sorted(unknown))}")
    regions = []
    for start, end, name, flags, section_name, symbol in DEFAULT_CHIP.MEMORY_MAP:
        start, end = overrides.get(name, (start, end))
        regions.append(
            MemoryRegion(
                name,
                AddressRange.from_bounds(start, end),
                flags,
                section_name,
                symbol,
            )
        )
    return regions


@dataclass
class SegmentDescriptor:
    """
    One PT_LOAD segment.

    file_offset is the position of the first byte in the source image, the
    ELF writer assigns the offsets in the output file. memsz is at least
    len(data), the difference is the flash alignment padding of the last
    section. symbol names the start of the region segments.
    """

    name: str
    vaddr: int
    flags: int
    file_offset: int
    data: bytes
    memsz: int
    region: str | None = None
    symbol: str | None = None
    align: int = DEFAULT_CHIP.ELF_SEGMENT_ALIGN

    @property
    def paddr(self) -> int:
        return self.vaddr

    @property
    def filesz(self) -> int:
        return len(self.data)


@dataclass
class _Chunk:
    region: MemoryRegion | None
    address: int
    file_offset: int
    data: bytes
    padding: int = 0


@dataclass
class _RegionContent:
    chunks: list[_Chunk] = field(default_factory=list)


class Relinker(object):
    """
    Classify the sections of an image into memory regions and describe the
    resulting segments.

    Args:
        memory_map: List of MemoryRegion, the default chip's map if None.
            Overlapping regions raise ConfigError.
        cap_length: Use the logical section lengths as segment memory size
            instead of the padded on-flash lengths. Boot images store only
            the padded text length, so their segments keep it either way.
    """

    def __init__(self, memory_map=None, cap_length=False):
        self.memory_map = list(default_memory_map() if memory_map is None else memory_map)
        self.cap_length = cap_length
        self._check_memory_map()
        self._sorted = sorted(self.memory_map, key=lambda r: r.range.start)
        self._starts = [r.range.start for r in self._sorted]

    def _check_memory_map(self):
        for i, region in enumerate(self.memory_map):
            if region.range.length <= 0:
                raise ConfigError(f"Memory region {region.name} is empty")
            for other in self.memory_map[i + 1 :]:
                if region.range.overlaps(other.range):
                    raise ConfigError(
                        f"Memory regions {region.name} ({region.range}) and "
                        f"{other.name} ({other.range}) overlap"
                    )

    def classify(self, address: int) -> MemoryRegion | None:
        """Return the region containing address, or None"""
        i = bisect.bisect_right(self._starts, address) - 1
        if i >= 0 and self._sorted[i].range.contains(address):
            return self._sorted[i]
        return None

    def _chunk_end(self, address: int, region: MemoryRegion | None) -> int:
        if region is not None:
            return region.range.end
        # unclassified bytes run up to the next region
        i = bisect.bisect_right(self._starts, address)
        return self._starts[i] if i < len(self._starts) else 1 << 32

    def split_section(self, address, file_offset, data, padded_length=None):
        """Cut the section data at region boundaries"""
        chunks = []
        pos = 0
        while pos < len(data):
            region = self.classify(address + pos)
            end = min(len(data), self._chunk_end(address + pos, region) - address)
            chunks.append(
                _Chunk(region, address + pos, file_offset + pos, data[pos:end])
            )
            pos = end
        if chunks and padded_length is not None:
            chunks[-1].padding = max(0, padded_length - len(data))
        return chunks

    def relink(self, image) -> list[SegmentDescriptor]:
        """
        Describe the segments of an OTAImage or BootImage.

        Segments are returned generic segment first, then in memory map
        order. Encrypted subimages are skipped.
        """
        for index, subimage in enumerate(getattr(image, "subimages", [])):
            if subimage.is_encrypted:
                log.warning(f"Skipping encrypted subimage {index} ({subimage})")

        contents = {}
        for index, section in image.sections_with_offsets():
            if not section.data:
                continue
            log.debug(
                f"Subimage {index}: {section.sect_type.name} section at "
                f"{section.load_address:#010x}, {len(section.data):#x} bytes"
            )
            for chunk in self.split_section(
                section.load_address,
                section.file_offset,
                section.data,
                section.padded_length,
            ):
                key = None if chunk.region is None else chunk.region.name
                contents.setdefault(key, _RegionContent()).chunks.append(chunk)

        segments = []
        generic = contents.get(None)
        if generic is not None:
            segments.append(self._generic_segment(generic))
        for region in self.memory_map:
            content = contents.get(region.name)
            if content is not None:
                segments.append(self._region_segment(region, content))
        return segments

    def _memsz(self, logical, padded):
        return logical if self.cap_length else padded

    def _generic_segment(self, content: _RegionContent) -> SegmentDescriptor:
        data = b"".join(c.data for c in content.chunks)
        return SegmentDescriptor(
            name=DEFAULT_CHIP.GENERIC_SECTION,
            vaddr=content.chunks[0].address,
            flags=DEFAULT_CHIP.GENERIC_FLAGS,
            file_offset=0,
            data=data,
            memsz=self._memsz(len(data), len(data) + content.chunks[-1].padding),
        )

    def _region_segment(self, region, content: _RegionContent) -> SegmentDescriptor:
        chunks = sorted(content.chunks, key=lambda c: c.address)
        base = chunks[0].address
        data = bytearray()
        padded = 0
        for chunk in chunks:
            pos = chunk.address - base
            if pos < len(data):
                raise FatalError(
                    f"Sections overlap at {chunk.address:#010x} in region {region.name}"
                )
            data += b"\x00" * (pos - len(data)) + chunk.data
            padded = max(padded, len(data) + chunk.padding)
        return SegmentDescriptor(
            name=region.section_name,
            vaddr=base,
            flags=region.flags,
            file_offset=chunks[0].file_offset,
            data=bytes(data),
            memsz=self._memsz(len(data), min(padded, region.range.end - base)),
            region=region.name,
            symbol=region.symbol,
        )


def _section_flags(flags: int) -> int:
    sh_flags = SHF.SHF_ALLOC
    if flags & PF_W:
        sh_flags |= SHF.SHF_WRITE
    if flags & PF_X:
        sh_flags |= SHF.SHF_EXECINSTR
    return sh_flags


def _segment_align(offset: int, vaddr: int, align: int) -> int:
    # largest power of two up to align keeping p_offset and p_vaddr congruent
    delta = (vaddr - offset) % align
    return align if delta == 0 else delta & -delta


def write_elf(segments: list[SegmentDescriptor], output: str, entry: int = 0) -> int:
    """
    Write segments to an ARM ELF file.

    Every segment becomes a PROGBITS section named after its memory region and
    a PT_LOAD program header covering it. Region segments also get a global
    start symbol in .symtab. Returns the size of the written file.
    """
    chip = DEFAULT_CHIP
    elf = ELF(e_machine=EM.EM_ARM, e_data=ELFDATA.ELFDATA2LSB)
    elf.Elf.Ehdr.e_type = ET.ET_EXEC
    elf.Elf.Ehdr.e_entry = entry
    elf.Elf.Ehdr.e_flags = chip.ELF_FLAGS

    symbols = []
    for segment in segments:
        elf._append_section(
            segment.name,
            segment.data,
            segment.vaddr,
            SHT.SHT_PROGBITS,
            _section_flags(segment.flags),
            0,  # sh_link
            0,  # sh_info
            1,  # sh_addralign
            0,  # sh_entsize
        )
        if segment.symbol is not None:
            symbols.append((segment.symbol, len(elf.Elf.Shdr_table) - 1, segment.vaddr))

    elf.append_special_section(".strtab")
    elf.append_special_section(".symtab")
    for name, section_index, value in symbols:
        elf.append_symbol(
            name,
            section_index,
            value,
            0,
            sym_binding=STB.STB_GLOBAL,
            sym_type=STT.STT_NOTYPE,
        )

    # drop the default program header, serializing then lays out the sections
    elf.Elf.Phdr_table.pop()
    bytes(elf)

    # section data shifts by the size of the program headers added below
    size_of_phdrs = len(Elf32_Phdr()) * len(segments)
    for segment in segments:
        section_header, _ = elf.get_section_by_name(segment.name)
        offset = section_header.sh_offset + size_of_phdrs
        align = _segment_align(offset, segment.vaddr, segment.align or 1)
        log.debug(
            f"Segment {segment.name}: offset {offset:#x}, vaddr {segment.vaddr:#010x}, "
            f"align {align:#x}"
        )
        elf.Elf.Phdr_table.append(
            Elf32_Phdr(
                PT.PT_LOAD,
                p_offset=offset,
                p_vaddr=segment.vaddr,
                p_paddr=segment.paddr,
                p_filesz=segment.filesz,
                p_memsz=segment.memsz,
                p_flags=segment.flags,
                p_align=align,
                little=elf.little,
            )
        )

    data = bytes(elf)
    with open(output, "wb") as f:
        f.write(data)
    return len(data)
