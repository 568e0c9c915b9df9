# SPDX-FileCopyrightText: 2024-2025 amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later
"""
Well-known key material of the RTL8720C (AmebaZ2) SDK.

Images that were never custom-signed are signed with these keys, so they are
enough to verify and rebuild stock firmware.
"""

from typing import NamedTuple


class KeyPair(NamedTuple):
    private: bytes
    public: bytes


HASH_KEY = (
    b"\x47\xe5\x66\x13\x35\xa4\xc5\xe0\xa9\x4d\x69\xf3\xc7\x37\xd5\x4f"
    b"\x23\x83\x79\x13\x32\x93\x97\x53\xef\x24\x27\x96\x08\xf6\xd7\x2b"
)

DEFAULT_IV = b"\xe7\x91\x9e\xe6\x98\xb1\xe5\x8d\x8a\xe5\xb0\x8e\xe9\xab\x94\x38"

APP_DEFAULT_USER_KEY2 = b"\xbb" + bytes(range(1, 32))

BOOT_DEFAULT_USER_KEY1 = b"\xaa" + bytes(range(1, 32))

XIP_KEY = b"\xa0\xd6\xda\xe7\xe0b\xca\x94\xcb\xb2\x94\xbf\x89k\x9fh"

XIP_IV = b"\x94\x87" * 8

# Written at flash offset 0, used by the ROM to calibrate SPI timing
FLASH_PATTERN = b"\x99\x99\x96\x96\x3f\xcc\x66\xfc\xc0\x33\xcc\x03\xe5\xdc\x31\x62"

DEFAULT_VALID_PATTERN = bytes(range(8))

KEY_PAIR_000 = KeyPair(
    b"\xa0\xd6\xda\xe7\xe0b\xca\x94\xcb\xb2\x94\xbf\x89k\x9fh"
    b"\xcf\x848wBV\xact\x03\xcaO\xd9\xa1\xc9VO",
    b"hQ>\xf8>9k\x12\xba\x05\x9a\x90\x0f6\xb6\xd3"
    b"\x1d\x11\xfe\x1c]%\xeb\x8a\xa7\xc5P0\x7f\x9c$\x05",
)

KEY_PAIR_001 = KeyPair(
    b"\x88*\xa1l\x8cD\xa7v\n\xa8\xc9\xab\"\xe3V\x8c"
    b"o\xa1l*\xfaO\x0c\xea)\xa1\n\xbc\xdf`\xe4O",
    b"H\xad#\xdd\xbd\xac\x9eeq\x9d\xb7\xd3\x94\xd4Mb"
    b"\x82\r\x19\xe5\rh7gt#~\x98\xd20^j",
)

KEY_PAIR_002 = KeyPair(
    b"X\xa3\xd9\x15ph5!\"`\xc2-b\x8b3m"
    b"\x13\x19\x0bS\x97\x14\xe3\xdb$\x9d\x82<\xa5wDS",
    b"\xfd\x8d?>Qm\x96\x18n\x10\xf0zd\xb2L}"
    b"\xe76\x82j$\xfa\xfe6~y\xf1\xfb\xb2\xf1\xc82",
)

KEY_PAIR_003 = KeyPair(
    bytes(range(31)) + b"_",
    b"\x8f@\xc5\xad\xb6\x8f%bJ\xe5\xb2\x14\xeavzn"
    b"\xc9M\x82\x9d={^\x1a\xd1\xbao>!8(_",
)

# Signs the OTA signature and subimage hashes of stock application images
DEFAULT_OTA_KEY = KEY_PAIR_003.private

DEFAULT_KEY_PAIRS = (KEY_PAIR_000, KEY_PAIR_001, KEY_PAIR_002, KEY_PAIR_003)
