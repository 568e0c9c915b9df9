import os

import pytest


def pytest_configure(config):
    # register custom markers
    config.addinivalue_line(
        "markers",
        "host_test: mark amebazii tests that run on the host machine only "
        "(don't require a real chip connected).",
    )

    config.addinivalue_line(
        "markers",
        "quick_test: mark amebazii tests checking basic functionality.",
    )


def need_to_install_package_err():
    pytest.exit(
        "To run the tests, install amebazii in development mode: "
        "pip install -e .[dev]"
    )


@pytest.fixture(scope="session", autouse=True)
def set_terminal_width():
    """Make sure terminal width is set to 120 columns for consistent test output."""
    os.environ["COLUMNS"] = "120"


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Don't pick up amebazii.cfg files of the machine running the tests"""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("AMEBAZII_CFGFILE", raising=False)


############################### Image builders ###############################

SRAM_LOAD = 0x10000480
XIP_LOAD = 0x9B000140


def sample_data(length, seed=0):
    return bytes((i * 7 + seed) & 0xFF for i in range(length))


def make_ota_image(xip=True, hash_algo="sha256", build=True):
    """OTA image with a FHWSS subimage holding one SRAM section of 0x2a00
    bytes and optionally a XIP subimage with one XIP section."""
    from amebazii.bin_image import OTAImage, Section, SubImage
    from amebazii.enums import HashAlgo, ImageType, SectionType
    from amebazii.headers import FST, ImageHeader

    algo = {"sha256": HashAlgo.SHA256, "md5": HashAlgo.MD5, None: None}[hash_algo]
    ram = SubImage(
        ImageHeader(img_type=ImageType.FHWSS, serial=100),
    )
    ram.body.fst = FST(hash_algo=algo)
    ram.add_section(
        Section(sample_data(0x2A00), load_address=SRAM_LOAD, entry_address=SRAM_LOAD)
    )
    image = OTAImage([ram])
    if xip:
        xip_image = SubImage(ImageHeader(img_type=ImageType.XIP, serial=100))
        xip_image.body.fst = FST(hash_algo=algo)
        xip_image.add_section(
            Section(
                sample_data(0x1234, seed=3),
                load_address=XIP_LOAD,
                sect_type=SectionType.XIP,
            )
        )
        image.add_subimage(xip_image)
    if build:
        image.build()
    return image


def make_boot_image(text_len=0x1F00, build=True):
    from amebazii.bin_image import BootImage

    image = BootImage(
        sample_data(text_len, seed=5),
        load_address=0x10036100,
        entry_address=0x10036100,
    )
    if build:
        image.build()
    return image


def make_pt_image(records=None, build=True):
    """Partition table with Boot, Fw1 and Fw2 records as (type, start, length)"""
    from amebazii.enums import PartitionType
    from amebazii.partition import PartitionTableImage, Record

    if records is None:
        records = [
            (PartitionType.BOOT, 0x4000, 0x8000),
            (PartitionType.FW1, 0xC000, 0xF8000),
            (PartitionType.FW2, 0x104000, 0xF8000),
        ]
    pt_image = PartitionTableImage()
    for part_type, start, length in records:
        pt_image.pt.add_record(Record(part_type=part_type, start_addr=start, length=length))
    if build:
        pt_image.build()
    return pt_image


def make_nvdm_item(group, name, value, status=None, index=0, item_type=None):
    """One stored NVDM data item with NUL terminated names"""
    from amebazii.nvdm import DataItemHeader, DataItemStatus, DataItemType

    group_raw = group.encode() + b"\x00"
    name_raw = name.encode() + b"\x00"
    header = DataItemHeader(
        status=DataItemStatus.VALID if status is None else status,
        group_name_size=len(group_raw),
        name_size=len(name_raw),
        value_size=len(value),
        index=index,
        item_type=DataItemType.RAW_DATA if item_type is None else item_type,
    )
    return header.to_bytes() + group_raw + name_raw + value + b"\x34\x12"


def make_nvdm_block(items, status=None, erase_count=1, peb_size=0x1000):
    """Erase block holding the given item bytes, the rest erased"""
    from amebazii.nvdm import PebHeader, PebStatus

    header = PebHeader(
        erase_count=erase_count,
        status=PebStatus.ACTIVED if status is None else status,
    )
    data = header.to_bytes() + b"".join(items)
    return data + b"\xff" * (peb_size - len(data))
