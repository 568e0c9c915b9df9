# SPDX-FileCopyrightText: 2024-2025 amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

# ELF program header flags
PF_X = 0x1
PF_W = 0x2
PF_R = 0x4


class RTL8720C(object):
    """Memory and flash layout of the RTL8710C/RTL8720C (AmebaZ2) family"""

    CHIP_NAME = "RTL8720C"

    # [start, end, name, ELF flags, ELF section name, start symbol]
    MEMORY_MAP = [
        [
            0x10000000,
            0x100000A0,
            "VECTORS_RAM",
            PF_R | PF_W,
            ".ram.vector_table",
            "__ram_vector_table_start__",
        ],
        [
            0x10000480,
            0x100004F0,
            "RAM_FUN_TABLE",
            PF_R | PF_W,
            ".ram.func.table",
            "__ram_start_table_start__",
        ],
        [
            0x100004F0,
            0x10000500,
            "RAM_IMG_SIGN",
            PF_R,
            ".ram.img.signature",
            "__ram_img_signature__",
        ],
        [
            0x10000500,
            0x1003FA00,
            "DTCM_RAM",
            PF_R | PF_W | PF_X,
            ".ram.code_text",
            "__ram_code_text_start__",
        ],
        [
            0x10040000,
            0x10060000,
            "EXTENSION_RAM",
            PF_R | PF_W,
            ".ram.ext",
            "__ram_ext_start__",
        ],
        [
            0x60000000,
            0x60400000,
            "PSRAM",
            PF_R | PF_W | PF_X,
            ".psram.code_text",
            "__psram_code_text_start__",
        ],
        [
            0x9B000140,
            0x9B800000,
            "XIP_FLASH_C",
            PF_R | PF_X,
            ".xip.code_c",
            "__xip_code_c_start__",
        ],
        [
            0x9B800140,
            0x9BFF0000,
            "XIP_FLASH_P",
            PF_R | PF_X,
            ".xip.code_p",
            "__xip_code_p_start__",
        ],
    ]

    # Bytes outside every region of the memory map
    GENERIC_SECTION = ".standard"
    GENERIC_FLAGS = PF_R

    # Fixed flash layout, the partition table locates everything else
    CALIBRATION_OFFSET = 0x0
    PARTITION_TABLE_OFFSET = 0x20
    SYSTEM_DATA_OFFSET = 0x1000
    SYSTEM_DATA_SIZE = 0x1000
    CALIBRATION_DATA_OFFSET = 0x2000
    FIRST_PARTITION_OFFSET = 0x4000

    # ELF header values for relinked images
    ELF_FLAGS = 0x05000200  # EABI5, soft-float
    ELF_SEGMENT_ALIGN = 0x10000
