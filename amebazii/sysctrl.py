# SPDX-FileCopyrightText: 2024-2025 amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later
"""
System data block stored at flash offset 0x1000.

Layout:

    0x000  ota2_address u32, ota2_size u32, force_old_image u32, reserved
    0x020  spi_config u32, flash_info u32, reserved
    0x030  ulog_baud u32, reserved
    0x040  spic_calibcfg [0x30]
    0xFE0  bt_parameter_data [0x20]
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .enums import FlashSize, SpiIOMode, SpiSpeed
from .headers import BinaryRecord
from .util import fill_data, optional_data

UNSET = 0xFFFFFFFF


@dataclass
class ForceOldImage:
    """GPIO forcing the bootloader to the previous OTA image.

    Packed as pin in bits 0-4, port in bit 5 and active in bit 7. The other
    bits are reserved and not preserved.
    """

    pin: int = 0
    port: int = 0
    active: bool = False

    @classmethod
    def from_int(cls, value: int) -> ForceOldImage:
        return cls(pin=value & 0x1F, port=value >> 5 & 1, active=bool(value >> 7 & 1))

    def to_int(self) -> int:
        return (self.pin & 0x1F) | (self.port & 1) << 5 | int(self.active) << 7


@dataclass
class SpiConfig:
    io_mode: SpiIOMode = SpiIOMode.QUAD_IO
    io_speed: SpiSpeed = SpiSpeed.F100MHZ

    @classmethod
    def from_int(cls, value: int, offset=None) -> SpiConfig:
        return cls(
            io_mode=SpiIOMode.decode(value & 0xFFFF, offset),
            io_speed=SpiSpeed.decode(value >> 16 & 0xFFFF, offset),
        )

    def to_int(self) -> int:
        return int(self.io_mode) | int(self.io_speed) << 16


@dataclass
class FlashInfo:
    flash_id: int = 0
    flash_size: FlashSize = FlashSize.SIZE_2M

    @classmethod
    def from_int(cls, value: int, offset=None) -> FlashInfo:
        return cls(
            flash_id=value & 0xFFFF,
            flash_size=FlashSize.decode(value >> 16 & 0xFFFF, offset),
        )

    def to_int(self) -> int:
        return (self.flash_id & 0xFFFF) | int(self.flash_size) << 16


@dataclass
class SystemData(BinaryRecord):
    FORMAT = "<III20sII8sI12s48s3952s32s"

    ota2_address: int | None = None
    ota2_size: int | None = None
    force_old_image: ForceOldImage = field(default_factory=ForceOldImage)
    spi_config: SpiConfig = field(default_factory=SpiConfig)
    flash_info: FlashInfo = field(default_factory=FlashInfo)
    ulog_baud: int = UNSET
    spic_calibcfg: bytes | None = None
    bt_parameter_data: bytes | None = None

    @classmethod
    def _unpack(cls, fields, offset):
        (
            ota2_address,
            ota2_size,
            force_old_image,
            _,
            spi_config,
            flash_info,
            _,
            ulog_baud,
            _,
            spic_calibcfg,
            _,
            bt_parameter_data,
        ) = fields
        return cls(
            ota2_address=None if ota2_address == UNSET else ota2_address,
            ota2_size=None if ota2_size == UNSET else ota2_size,
            force_old_image=ForceOldImage.from_int(force_old_image),
            spi_config=SpiConfig.from_int(spi_config, offset + 0x20),
            flash_info=FlashInfo.from_int(flash_info, offset + 0x24),
            ulog_baud=ulog_baud,
            spic_calibcfg=optional_data(spic_calibcfg),
            bt_parameter_data=optional_data(bt_parameter_data),
        )

    def _pack(self):
        return (
            UNSET if self.ota2_address is None else self.ota2_address,
            UNSET if self.ota2_size is None else self.ota2_size,
            self.force_old_image.to_int(),
            b"\xff" * 20,
            self.spi_config.to_int(),
            self.flash_info.to_int(),
            b"\xff" * 8,
            self.ulog_baud,
            b"\xff" * 12,
            fill_data(self.spic_calibcfg, 0x30),
            b"\xff" * 0xF70,
            fill_data(self.bt_parameter_data, 0x20),
        )
