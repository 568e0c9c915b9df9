# SPDX-FileCopyrightText: 2024-2025 amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

from enum import IntEnum

from .util import DecodeError


class WireEnum(IntEnum):
    @classmethod
    def decode(cls, value, offset=None):
        """Map a raw integer to a member, unknown values are a DecodeError"""
        try:
            return cls(value)
        except ValueError:
            raise DecodeError(f"Invalid {cls.__name__} value {value:#x}", offset)


class ImageType(WireEnum):
    PARTTAB = 0
    BOOT = 1
    FHWSS = 2  # Firmware in SRAM, secure
    FHWSNS = 3  # Firmware in SRAM, non-secure
    FWLS = 4
    ISP = 5
    VOE = 6
    WLN = 7
    XIP = 8
    WOWLN = 9
    CINIT = 10
    CPFW = 11
    UNKNOWN = 0x3F


class SectionType(WireEnum):
    DTCM = 0x80
    ITCM = 0x81
    SRAM = 0x82
    PSRAM = 0x83
    LPDDR = 0x84
    XIP = 0x85


class XipPageRemapSize(WireEnum):
    SIZE_16K = 0
    SIZE_32K = 1
    SIZE_64K = 2

    @property
    def page_size(self):
        return 0x4000 << self.value


class EncryptionAlgo(WireEnum):
    ECB = 0
    CBC = 1
    OTHER = 0xFF


class HashAlgo(WireEnum):
    MD5 = 0
    SHA256 = 1
    OTHER = 0xFF

    @property
    def digest_size(self):
        return {HashAlgo.MD5: 16, HashAlgo.SHA256: 32}.get(self, 0)


class PartitionType(WireEnum):
    PARTTAB = 0
    BOOT = 1
    FW1 = 2
    FW2 = 3
    SYS = 4
    CAL = 5
    USER = 6
    VAR = 7
    MP = 8
    RDP = 9


class KeyExportOp(WireEnum):
    NONE = 0
    LATEST = 1
    BOTH = 2


class SpiIOMode(WireEnum):
    QUAD_IO = 0xFFFF
    QUAD_OUTPUT = 0x7FFF
    DUAL_IO = 0x3FFF
    DUAL_OUTPUT = 0x1FFF
    ONE_IO = 0x0FFF


class SpiSpeed(WireEnum):
    F100MHZ = 0xFFFF
    F83MHZ = 0x7FFF
    F71MHZ = 0x3FFF
    F62MHZ = 0x1FFF
    F55MHZ = 0x0FFF
    F50MHZ = 0x07FF
    F45MHZ = 0x03FF


class FlashSize(WireEnum):
    SIZE_2M = 0xFFFF
    SIZE_32M = 0x7FFF
    SIZE_16M = 0x3FFF
    SIZE_8M = 0x1FFF
    SIZE_4M = 0x0FFF
