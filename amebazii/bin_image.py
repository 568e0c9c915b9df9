# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

from __future__ import annotations

import io
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple

from . import crypto
from .enums import HashAlgo, ImageType, SectionType
from .headers import FST, EntryHeader, Encrypted, ImageHeader, KeyBlock, SectionHeader
from .keys import DEFAULT_OTA_KEY, HASH_KEY
from .logger import log
from .util import (
    BuildError,
    DecodeError,
    ImageSource,
    align_file_position,
    align_up,
    fill_data,
    get_bytes,
    optional_data,
    read_exact,
    write_padding,
)

HASH_SIZE = 32
SECTION_ALIGN = 0x20
SUBIMAGE_ALIGN = 0x4000  # when another subimage follows
LAST_SUBIMAGE_ALIGN = 0x40
SUBIMAGE_PAD = b"\x87"
PUBLIC_KEY_COUNT = 5
# Key block plus the public key slots in front of the first subimage
OTA_KEYS_SIZE = KeyBlock.binary_size() + PUBLIC_KEY_COUNT * 32


class Verification(Enum):
    OK = "OK"
    FAIL = "FAIL"
    SKIPPED = "SKIPPED"

    @classmethod
    def of(cls, result: bool) -> Verification:
        return cls.OK if result else cls.FAIL

    def __str__(self):
        return self.value


class LoadableSection(NamedTuple):
    """A block of plain code or data placed at load_address at runtime.

    file_offset is the position of the data inside the serialized image,
    padded_length its size including the flash alignment padding.
    """

    sect_type: SectionType
    load_address: int
    data: bytes
    file_offset: int
    padded_length: int


def _hash_slot(digest: bytes | None) -> bytes:
    # MD5 digests are shorter than the 32 byte slot
    return fill_data(digest, HASH_SIZE)


def _hashable(algo: HashAlgo | None) -> bool:
    if algo is None:
        return False
    if not algo.digest_size:
        log.debug(f"Hash algorithm {algo.name} isn't supported, not verified")
        return False
    return True


class Section(object):
    """Section header, entry header and the data loaded to entry.load_address"""

    def __init__(
        self,
        data=b"",
        load_address=0,
        entry_address=None,
        sect_type=SectionType.SRAM,
        header=None,
        entry=None,
    ):
        self.header = header or SectionHeader(sect_type=sect_type)
        self.entry = entry or EntryHeader(
            load_address=load_address, entry_address=entry_address
        )
        self.data = data
        self.update_length()

    def __repr__(self):
        return "%s len 0x%05x load 0x%08x" % (
            self.header.sect_type.name,
            len(self.data),
            self.entry.load_address,
        )

    @property
    def aligned_length(self):
        """Entry header plus data, padded for flash storage"""
        return align_up(EntryHeader.binary_size() + len(self.data), SECTION_ALIGN)

    @property
    def aligned_size(self):
        return SectionHeader.binary_size() + self.aligned_length

    def update_length(self):
        self.header.length = EntryHeader.binary_size() + len(self.data)
        self.entry.length = len(self.data)

    @classmethod
    def read(cls, f):
        header = SectionHeader.read(f)
        entry = EntryHeader.read(f)
        data_len = header.length - EntryHeader.binary_size()
        if data_len < 0:
            raise DecodeError(
                f"Section length {header.length:#x} is shorter than its entry header",
                f.tell() - EntryHeader.binary_size(),
            )
        data = read_exact(f, data_len, "section data")
        entry_length = entry.length
        section = cls(data, header=header, entry=entry)
        section.entry.length = entry_length  # keep as read
        f.seek(section.aligned_length - EntryHeader.binary_size() - data_len, 1)
        return section

    def write(self, f):
        self.header.write(f)
        self.entry.write(f)
        f.write(self.data)
        pad = self.aligned_length - EntryHeader.binary_size() - len(self.data)
        f.write(b"\x00" * pad)


@dataclass
class Plain:
    """Unencrypted subimage payload: security table and sections."""

    fst: FST = field(default_factory=FST)
    sections: list[Section] = field(default_factory=list)

    def __len__(self):
        return FST.binary_size() + sum(s.aligned_size for s in self.sections)

    def write(self, f):
        self.fst.write(f)
        for section in self.sections:
            section.write(f)


class SubImage(object):
    """
    Image header, then a plain or encrypted payload, then the subimage hash.

    The payload is Plain when header.is_encrypt is clear, otherwise Encrypted.
    """

    def __init__(self, header=None, body=None, hash=None):
        self.header = header or ImageHeader(img_type=ImageType.FHWSS)
        self.body: Plain | Encrypted = Plain() if body is None else body
        self.hash = hash
        self.hash_ok = Verification.SKIPPED

    def __repr__(self):
        return "%s serial %d size 0x%05x %s" % (
            self.header.img_type.name,
            self.header.serial,
            self.header.segment_size,
            "encrypted" if self.is_encrypted else f"{len(self.sections)} sections",
        )

    @property
    def is_encrypted(self):
        return isinstance(self.body, Encrypted)

    @property
    def fst(self) -> FST | None:
        return None if self.is_encrypted else self.body.fst

    @property
    def sections(self) -> list[Section]:
        return [] if self.is_encrypted else self.body.sections

    @property
    def hash_algo(self) -> HashAlgo | None:
        # an encrypted security table can't be read, stock images use SHA-256
        return HashAlgo.SHA256 if self.is_encrypted else self.body.fst.hash_algo

    def add_section(self, section):
        if self.is_encrypted:
            raise BuildError("Can't add a section to an encrypted subimage")
        self.body.sections.append(section)

    def remove_section(self, index):
        if self.is_encrypted:
            raise BuildError("Can't remove a section from an encrypted subimage")
        del self.body.sections[index]

    def build_segment_size(self):
        """Security table plus sections, without the hash and padding"""
        return len(self.body)

    @property
    def unpadded_size(self):
        return ImageHeader.binary_size() + self.header.segment_size + HASH_SIZE

    def update_sizes(self):
        self.header.is_encrypt = self.is_encrypted
        sections = self.sections
        for i, section in enumerate(sections):
            section.update_length()
            section.header.next_offset = (
                section.aligned_size if i < len(sections) - 1 else None
            )
        self.header.segment_size = self.build_segment_size()

    def compute_hash(self, data: bytes, key: bytes) -> bytes | None:
        if self.hash_algo is None:
            return None
        return crypto.compute_hash(self.hash_algo, data, key)

    @classmethod
    def read(cls, f):
        header = ImageHeader.read(f)
        if header.is_encrypt:
            body = Encrypted(read_exact(f, header.segment_size, "encrypted subimage"))
        else:
            fst = FST.read(f)
            sections = []
            while True:
                section = Section.read(f)
                sections.append(section)
                if not section.header.has_next():
                    break
            body = Plain(fst, sections)
        stored_hash = read_exact(f, HASH_SIZE, "subimage hash")
        return cls(header, body, optional_data(stored_hash))

    def write(self, f):
        self.header.write(f)
        self.body.write(f)
        f.write(_hash_slot(self.hash))


class OTAImage(object):
    """
    Application (OTA) image: key block, public keys, chained subimages and
    a trailing checksum.

    The key block's encryption key slot holds the OTA signature.
    """

    def __init__(self, subimages=None, keyblock=None, public_keys=None, checksum=None):
        self.keyblock = keyblock or KeyBlock()
        self.public_keys = list(public_keys or [None] * PUBLIC_KEY_COUNT)
        self.subimages: list[SubImage] = subimages or []
        self.checksum = checksum
        self.signature_ok = Verification.SKIPPED
        self.checksum_ok = Verification.SKIPPED

    @property
    def ota_signature(self):
        return self.keyblock.enc_pubkey

    def add_subimage(self, subimage):
        self.subimages.append(subimage)

    def remove_subimage(self, index):
        del self.subimages[index]

    def layout(self):
        """
        Return the offset of every subimage header and the offset of the
        checksum, following the next_offset chain of the headers.
        """
        offsets = []
        pos = OTA_KEYS_SIZE
        for subimage in self.subimages:
            offsets.append(pos)
            if subimage.header.has_next():
                pos += subimage.header.next_offset
        end = OTA_KEYS_SIZE
        if self.subimages:
            end = align_up(offsets[-1] + self.subimages[-1].unpadded_size, LAST_SUBIMAGE_ALIGN)
        return offsets, end

    def signed_range(self, index):
        """Byte range covered by the hash of subimage index"""
        offsets, _ = self.layout()
        start = offsets[index]
        end = start + ImageHeader.binary_size() + self.subimages[index].header.segment_size
        # the first subimage hash also covers the key block and public keys
        return (0 if index == 0 else start), end

    def sections_with_offsets(self):
        """Yield (subimage index, LoadableSection) for every plain section"""
        offsets, _ = self.layout()
        for index, subimage in enumerate(self.subimages):
            if subimage.is_encrypted:
                continue
            pos = offsets[index] + ImageHeader.binary_size() + FST.binary_size()
            for section in subimage.sections:
                data_offset = pos + SectionHeader.binary_size() + EntryHeader.binary_size()
                yield index, LoadableSection(
                    section.header.sect_type,
                    section.entry.load_address,
                    section.data,
                    data_offset,
                    section.aligned_length - EntryHeader.binary_size(),
                )
                pos += section.header.next_offset or section.aligned_size

    def update_sizes(self):
        """Recompute section lengths, segment sizes and the header chain"""
        pos = OTA_KEYS_SIZE
        for i, subimage in enumerate(self.subimages):
            subimage.update_sizes()
            if i < len(self.subimages) - 1:
                next_pos = align_up(pos + subimage.unpadded_size, SUBIMAGE_ALIGN)
                subimage.header.next_offset = next_pos - pos
                pos = next_pos
            else:
                subimage.header.next_offset = None

    def build_ota_signature(self, key: bytes = DEFAULT_OTA_KEY) -> bytes:
        """Keyed hash of the first subimage header"""
        if not self.subimages:
            raise BuildError("OTA image has no subimages to sign")
        first = self.subimages[0]
        if first.hash_algo is None:
            raise BuildError("First subimage has hashing disabled, can't sign image")
        return crypto.compute_hash(first.hash_algo, first.header.to_bytes(), key)

    def build(self, key: bytes = DEFAULT_OTA_KEY):
        """
        Make the image consistent again after any change: sizes first, then
        the OTA signature, the subimage hashes and finally the checksum.
        """
        if key is None:
            raise BuildError("A key is required to sign the OTA image")
        self.update_sizes()
        self.keyblock.enc_pubkey = _hash_slot(self.build_ota_signature(key))

        self.checksum = None
        data = self.to_bytes()
        for i, subimage in enumerate(self.subimages):
            start, end = self.signed_range(i)
            subimage.hash = subimage.compute_hash(data[start:end], key)

        self.checksum = crypto.checksum(self.to_bytes())
        self.verify(key)

    def resign(self, key: bytes, hash_algo: HashAlgo | None = None, hash_pubkey=None):
        """
        Sign the image with a new key, optionally switching every plain
        subimage to another hash algorithm or replacing the hash public key.
        """
        if hash_algo is not None:
            for subimage in self.subimages:
                if subimage.is_encrypted:
                    log.warning(
                        f"Keeping the hash algorithm of encrypted subimage {subimage}"
                    )
                else:
                    subimage.fst.hash_algo = hash_algo
        if hash_pubkey is not None:
            self.keyblock.hash_pubkey = hash_pubkey
        self.build(key)

    def verify(self, key: bytes = DEFAULT_OTA_KEY, data: bytes | None = None) -> bool:
        """
        Check the OTA signature, every subimage hash and the checksum against
        data (the canonical serialization if None). The results are stored
        in the signature_ok, checksum_ok and SubImage.hash_ok flags.
        """
        if data is None:
            data = self.to_bytes()

        if not self.subimages or not _hashable(self.subimages[0].hash_algo):
            self.signature_ok = Verification.SKIPPED
        elif self.ota_signature is None:
            self.signature_ok = Verification.FAIL
        else:
            first = self.subimages[0]
            header = data[OTA_KEYS_SIZE : OTA_KEYS_SIZE + ImageHeader.binary_size()]
            self.signature_ok = Verification.of(
                crypto.verify_hash(first.hash_algo, header, self.ota_signature, key)
            )

        for i, subimage in enumerate(self.subimages):
            start, end = self.signed_range(i)
            if not _hashable(subimage.hash_algo):
                subimage.hash_ok = Verification.SKIPPED
            elif subimage.hash is None or end > len(data):
                subimage.hash_ok = Verification.FAIL
            else:
                subimage.hash_ok = Verification.of(
                    crypto.verify_hash(
                        subimage.hash_algo, data[start:end], subimage.hash, key
                    )
                )

        if self.checksum is None:
            self.checksum_ok = Verification.SKIPPED
        else:
            _, end = self.layout()
            self.checksum_ok = Verification.of(
                crypto.checksum(data[:end]) == self.checksum
            )

        results = [self.signature_ok, self.checksum_ok]
        results += [s.hash_ok for s in self.subimages]
        return Verification.FAIL not in results

    @classmethod
    def read(cls, f):
        start = f.tell()
        keyblock = KeyBlock.read(f)
        public_keys = [
            optional_data(read_exact(f, 32, "public key"))
            for _ in range(PUBLIC_KEY_COUNT)
        ]
        subimages = []
        while True:
            header_start = f.tell()
            subimage = SubImage.read(f)
            subimages.append(subimage)
            if not subimage.header.has_next():
                align_file_position(f, LAST_SUBIMAGE_ALIGN, start)
                break
            f.seek(header_start + subimage.header.next_offset)

        checksum = int.from_bytes(read_exact(f, 4, "checksum"), "little")
        return cls(
            subimages,
            keyblock,
            public_keys,
            None if checksum == 0xFFFFFFFF else checksum,
        )

    def write(self, f):
        start = f.tell()
        self.keyblock.write(f)
        for key in self.public_keys:
            f.write(fill_data(key, 32))
        for i, subimage in enumerate(self.subimages):
            subimage.write(f)
            if i < len(self.subimages) - 1:
                write_padding(f, SUBIMAGE_ALIGN, SUBIMAGE_PAD, start)
            else:
                write_padding(f, LAST_SUBIMAGE_ALIGN, SUBIMAGE_PAD, start)
        if self.checksum is not None:
            f.write(self.checksum.to_bytes(4, "little"))
        return f.tell() - start

    def to_bytes(self) -> bytes:
        f = io.BytesIO()
        self.write(f)
        return f.getvalue()


class BootImage(object):
    """
    Bootloader image: key block, image header, one entry header with its
    text and a HMAC-SHA256 hash over everything before it.
    """

    TEXT_OFFSET = (
        KeyBlock.binary_size() + ImageHeader.binary_size() + EntryHeader.binary_size()
    )

    def __init__(
        self,
        text=b"",
        load_address=0,
        entry_address=None,
        keyblock=None,
        header=None,
        entry=None,
        hash=None,
    ):
        self.keyblock = keyblock or KeyBlock()
        self.header = header or ImageHeader(img_type=ImageType.BOOT)
        self.entry = entry or EntryHeader(
            load_address=load_address, entry_address=entry_address
        )
        self.text = text
        self.hash = hash
        self.hash_ok = Verification.SKIPPED

    def __repr__(self):
        return "BOOT len 0x%05x load 0x%08x" % (len(self.text), self.entry.load_address)

    def build_segment_size(self):
        return align_up(EntryHeader.binary_size() + len(self.text), SECTION_ALIGN)

    def update_sizes(self):
        self.header.segment_size = self.build_segment_size()
        self.entry.length = self.header.segment_size - EntryHeader.binary_size()

    def _signed_end(self):
        return KeyBlock.binary_size() + ImageHeader.binary_size() + self.header.segment_size

    def build(self, key: bytes = HASH_KEY):
        if key is None:
            raise BuildError("A key is required to hash the boot image")
        self.update_sizes()
        self.hash = None
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

    def sections_with_offsets(self):
        yield 0, LoadableSection(
            SectionType.SRAM,
            self.entry.load_address,
            self.text,
            self.TEXT_OFFSET,
            self.header.segment_size - EntryHeader.binary_size(),
        )

    @classmethod
    def read(cls, f):
        start = f.tell()
        keyblock = KeyBlock.read(f)
        header = ImageHeader.read(f)
        entry = EntryHeader.read(f)
        text_len = header.segment_size - EntryHeader.binary_size()
        if text_len < 0:
            raise DecodeError(
                f"Boot image segment size {header.segment_size:#x} is too small",
                start + KeyBlock.binary_size(),
            )
        text = read_exact(f, text_len, "boot image text")
        align_file_position(f, SECTION_ALIGN, start)
        stored_hash = read_exact(f, HASH_SIZE, "boot image hash")
        return cls(
            text,
            keyblock=keyblock,
            header=header,
            entry=entry,
            hash=optional_data(stored_hash),
        )

    def write(self, f):
        start = f.tell()
        self.keyblock.write(f)
        self.header.write(f)
        self.entry.write(f)
        f.write(self.text)
        write_padding(f, SECTION_ALIGN, b"\x00", start)
        f.write(_hash_slot(self.hash))
        return f.tell() - start

    def to_bytes(self) -> bytes:
        f = io.BytesIO()
        self.write(f)
        return f.getvalue()


def load_ota_image(source: ImageSource, key: bytes | None = None) -> OTAImage:
    """
    Parse an OTA image and verify it.

    Verification results are attached to the returned image, a signature or
    checksum mismatch never raises.
    """
    data, name = get_bytes(source)
    image = OTAImage.read(io.BytesIO(data))
    if not image.verify(DEFAULT_OTA_KEY if key is None else key, data):
        log.debug(f"OTA image {name or ''} failed verification")
    return image


def load_boot_image(source: ImageSource, key: bytes | None = None) -> BootImage:
    """Parse a boot image and verify its hash."""
    data, name = get_bytes(source)
    image = BootImage.read(io.BytesIO(data))
    if not image.verify(HASH_KEY if key is None else key, data):
        log.debug(f"Boot image {name or ''} failed verification")
    return image
