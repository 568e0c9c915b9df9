# SPDX-FileCopyrightText: 2024-2025 amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later
"""
Fixed-layout records shared by all image formats.

Every record can be read from and written to a binary stream and knows its
on-wire size. All integers are little-endian, reserved bytes are written as
0xFF and unset keys or patterns are written as 0xFF fill.
"""

from __future__ import annotations

import io
import struct
from dataclasses import dataclass, field

from .enums import EncryptionAlgo, HashAlgo, ImageType, SectionType, XipPageRemapSize
from .keys import DEFAULT_VALID_PATTERN
from .util import BuildError, fill_data, optional_data, read_exact

# next_offset values that terminate a chain of headers
NO_NEXT = (0, 0xFFFFFFFF)


def _reserved(size):
    return b"\xff" * size


def _next_offset(value):
    return None if value in NO_NEXT else value


class BinaryRecord:
    """Base class for the fixed-size records of the image formats.

    Subclasses set FORMAT and implement _pack() and _unpack(fields, offset).
    """

    FORMAT = ""

    @classmethod
    def binary_size(cls) -> int:
        return struct.calcsize(cls.FORMAT)

    @classmethod
    def read(cls, f):
        offset = f.tell()
        data = read_exact(f, cls.binary_size(), cls.__name__)
        return cls._unpack(struct.unpack(cls.FORMAT, data), offset)

    @classmethod
    def from_bytes(cls, data: bytes):
        return cls.read(io.BytesIO(data))

    def write(self, f) -> int:
        data = self.to_bytes()
        f.write(data)
        return len(data)

    def to_bytes(self) -> bytes:
        return struct.pack(self.FORMAT, *self._pack())

    @classmethod
    def _unpack(cls, fields, offset):
        raise NotImplementedError

    def _pack(self):
        raise NotImplementedError


@dataclass
class KeyBlock(BinaryRecord):
    """Two public keys in front of every image: encryption, then hash.

    In OTA images the encryption key slot holds the OTA signature.
    """

    FORMAT = "<32s32s"

    enc_pubkey: bytes | None = None
    hash_pubkey: bytes | None = None

    @classmethod
    def _unpack(cls, fields, offset):
        return cls(optional_data(fields[0]), optional_data(fields[1]))

    def _pack(self):
        return fill_data(self.enc_pubkey, 32), fill_data(self.hash_pubkey, 32)


@dataclass
class ImageHeader(BinaryRecord):
    FORMAT = "<IIBBBB8sI8s32s32s"

    img_type: ImageType = ImageType.PARTTAB
    segment_size: int = 0
    next_offset: int | None = None
    is_encrypt: bool = False
    # Public key index for application images, "special" flag otherwise
    pkey_index: int = 0
    serial: int = 0
    user_key1: bytes | None = None
    user_key2: bytes | None = None

    @classmethod
    def _unpack(cls, fields, offset):
        (
            segment_size,
            next_offset,
            img_type,
            is_encrypt,
            pkey_index,
            flags,
            _,
            serial,
            _,
            user_key1,
            user_key2,
        ) = fields
        return cls(
            img_type=ImageType.decode(img_type, offset + 8),
            segment_size=segment_size,
            next_offset=_next_offset(next_offset),
            is_encrypt=bool(is_encrypt),
            pkey_index=pkey_index,
            serial=serial,
            user_key1=user_key1 if flags & 0b01 else None,
            user_key2=user_key2 if flags & 0b10 else None,
        )

    def _pack(self):
        flags = (self.user_key1 is not None) | (self.user_key2 is not None) << 1
        return (
            self.segment_size,
            0xFFFFFFFF if self.next_offset is None else self.next_offset,
            self.img_type,
            int(self.is_encrypt),
            self.pkey_index,
            flags,
            _reserved(8),
            self.serial,
            _reserved(8),
            fill_data(self.user_key1, 32),
            fill_data(self.user_key2, 32),
        )

    def has_next(self) -> bool:
        return self.next_offset is not None


@dataclass
class EntryHeader(BinaryRecord):
    """Load and entry address of the data that follows."""

    FORMAT = "<III20s"

    length: int = 0
    load_address: int = 0
    entry_address: int | None = None

    @classmethod
    def _unpack(cls, fields, offset):
        length, load_address, entry_address, _ = fields
        return cls(
            length=length,
            load_address=load_address,
            entry_address=None if entry_address == 0xFFFFFFFF else entry_address,
        )

    def _pack(self):
        return (
            self.length,
            self.load_address,
            0xFFFFFFFF if self.entry_address is None else self.entry_address,
            _reserved(20),
        )


@dataclass
class SectionHeader(BinaryRecord):
    """Header of one section. length covers the EntryHeader and the data."""

    FORMAT = "<IIBBBB4s8sB7s16s16s32s"

    sect_type: SectionType = SectionType.SRAM
    length: int = 0
    next_offset: int | None = None
    sce_enabled: bool = False
    xip_page_size: XipPageRemapSize = XipPageRemapSize.SIZE_16K
    xip_block_size: int = 0
    valid_pattern: bytes = DEFAULT_VALID_PATTERN
    xip_key: bytes | None = None
    xip_iv: bytes | None = None

    @classmethod
    def _unpack(cls, fields, offset):
        (
            length,
            next_offset,
            sect_type,
            sce_enabled,
            xip_page_size,
            xip_block_size,
            _,
            valid_pattern,
            xip_key_iv_valid,
            _,
            xip_key,
            xip_iv,
            _,
        ) = fields
        return cls(
            sect_type=SectionType.decode(sect_type, offset + 8),
            length=length,
            next_offset=_next_offset(next_offset),
            sce_enabled=bool(sce_enabled),
            xip_page_size=XipPageRemapSize.decode(xip_page_size, offset + 10),
            xip_block_size=xip_block_size,
            valid_pattern=valid_pattern,
            xip_key=xip_key if xip_key_iv_valid & 1 else None,
            xip_iv=xip_iv if xip_key_iv_valid & 1 else None,
        )

    def is_xip_key_iv_valid(self) -> bool:
        return self.xip_key is not None and self.xip_iv is not None

    def _pack(self):
        if (self.xip_key is None) != (self.xip_iv is None):
            raise BuildError("XIP key and IV must be set together")
        return (
            self.length,
            0xFFFFFFFF if self.next_offset is None else self.next_offset,
            self.sect_type,
            int(self.sce_enabled),
            self.xip_page_size,
            self.xip_block_size,
            _reserved(4),
            self.valid_pattern,
            int(self.is_xip_key_iv_valid()),
            _reserved(7),
            fill_data(self.xip_key, 16),
            fill_data(self.xip_iv, 16),
            _reserved(32),
        )

    def has_next(self) -> bool:
        return self.next_offset is not None


@dataclass
class FST(BinaryRecord):
    """Firmware security table: encryption and hash settings of a subimage.

    An algorithm is None when its enable flag is cleared. The cipher key and IV
    are present together or not at all.
    """

    FORMAT = "<HHI8s4sBB10s32s16s16s"

    enc_algo: EncryptionAlgo | None = None
    hash_algo: HashAlgo | None = HashAlgo.SHA256
    partition_size: int = 0
    valid_pattern: bytes = DEFAULT_VALID_PATTERN
    cipher_key: bytes | None = None
    cipher_iv: bytes | None = None

    @classmethod
    def _unpack(cls, fields, offset):
        (
            enc_algo,
            hash_algo,
            partition_size,
            valid_pattern,
            _,
            flags,
            cipher_key_iv_valid,
            _,
            cipher_key,
            cipher_iv,
            _,
        ) = fields
        # both ids are decoded even when their enable flag is cleared
        enc_algo = EncryptionAlgo.decode(enc_algo, offset)
        hash_algo = HashAlgo.decode(hash_algo, offset + 2)
        key_iv_valid = cipher_key_iv_valid & 1
        return cls(
            enc_algo=enc_algo if flags & 0b01 else None,
            hash_algo=hash_algo if flags & 0b10 else None,
            partition_size=partition_size,
            valid_pattern=valid_pattern,
            cipher_key=cipher_key if key_iv_valid else None,
            cipher_iv=cipher_iv if key_iv_valid else None,
        )

    def is_cipher_key_iv_valid(self) -> bool:
        return self.cipher_key is not None and self.cipher_iv is not None

    def _pack(self):
        if (self.cipher_key is None) != (self.cipher_iv is None):
            raise BuildError("Cipher key and IV must be set together")
        flags = (self.enc_algo is not None) | (self.hash_algo is not None) << 1
        return (
            0 if self.enc_algo is None else self.enc_algo,
            0 if self.hash_algo is None else self.hash_algo,
            self.partition_size,
            self.valid_pattern,
            _reserved(4),
            flags,
            int(self.is_cipher_key_iv_valid()),
            _reserved(10),
            fill_data(self.cipher_key, 32),
            fill_data(self.cipher_iv, 16),
            _reserved(16),
        )


@dataclass
class Encrypted:
    """Opaque ciphertext standing in for a structure that can't be decoded."""

    data: bytes = field(default=b"", repr=False)

    def __len__(self):
        return len(self.data)

    def __repr__(self):
        return f"Encrypted(len {len(self.data):#x})"

    def write(self, f) -> int:
        f.write(self.data)
        return len(self.data)
