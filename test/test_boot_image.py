import io
import struct

from conftest import make_boot_image, need_to_install_package_err, sample_data

import pytest

try:
    from amebazii import crypto
    from amebazii.bin_image import BootImage, Verification, load_boot_image
    from amebazii.enums import ImageType, SectionType
    from amebazii.keys import BOOT_DEFAULT_USER_KEY1, DEFAULT_OTA_KEY, HASH_KEY
    from amebazii.util import BuildError, DecodeError
except ImportError:
    need_to_install_package_err()


@pytest.mark.host_test
class TestBootImage:
    def test_build(self):
        image = make_boot_image()
        assert image.header.img_type == ImageType.BOOT
        assert image.header.segment_size == 0x1F20
        assert image.entry.length == 0x1F00
        assert image.hash_ok == Verification.OK
        data = image.to_bytes()
        assert len(data) == BootImage.TEXT_OFFSET + 0x1F00 + 32
        assert data[BootImage.TEXT_OFFSET : BootImage.TEXT_OFFSET + 0x1F00] == (
            sample_data(0x1F00, seed=5)
        )

    def test_hash(self):
        data = make_boot_image().to_bytes()
        assert data[-32:] == crypto.hmac_sha256(HASH_KEY, data[:-32])

    def test_unaligned_text(self):
        image = make_boot_image(text_len=0x1F10)
        assert image.header.segment_size == 0x1F40
        assert image.entry.length == 0x1F20
        data = image.to_bytes()
        # text is zero padded up to the hash
        assert data[BootImage.TEXT_OFFSET + 0x1F10 : -32] == b"\x00" * 0x10
        decoded = load_boot_image(data)
        assert decoded.hash_ok == Verification.OK
        # the padding is read back as part of the text
        assert decoded.text == sample_data(0x1F10, seed=5) + b"\x00" * 0x10

    def test_parse(self):
        image = make_boot_image(build=False)
        image.header.user_key1 = BOOT_DEFAULT_USER_KEY1
        image.header.serial = 7
        image.build()
        data = image.to_bytes()
        decoded = load_boot_image(data)
        assert decoded.entry.load_address == 0x10036100
        assert decoded.entry.entry_address == 0x10036100
        assert decoded.header.serial == 7
        assert decoded.header.user_key1 == BOOT_DEFAULT_USER_KEY1
        assert decoded.hash_ok == Verification.OK
        assert decoded.to_bytes() == data

    def test_wrong_key(self):
        decoded = load_boot_image(make_boot_image().to_bytes(), DEFAULT_OTA_KEY)
        assert decoded.hash_ok == Verification.FAIL

    def test_trailing_data_ignored(self):
        data = make_boot_image().to_bytes() + b"\xff" * 0x1000
        assert load_boot_image(data).hash_ok == Verification.OK

    def test_hash_unset(self):
        data = make_boot_image().to_bytes()
        decoded = load_boot_image(data[:-32] + b"\xff" * 32)
        assert decoded.hash is None
        assert decoded.hash_ok == Verification.FAIL

    def test_segment_size_too_small(self):
        data = bytearray(make_boot_image().to_bytes())
        struct.pack_into("<I", data, 0x40, 0x10)
        with pytest.raises(DecodeError, match="segment size 0x10 is too small"):
            BootImage.read(io.BytesIO(bytes(data)))

    def test_truncated(self):
        with pytest.raises(DecodeError, match="boot image text"):
            load_boot_image(make_boot_image().to_bytes()[:0x1000])

    def test_no_key(self):
        with pytest.raises(BuildError, match="key is required"):
            make_boot_image(build=False).build(None)

    def test_sections_with_offsets(self):
        image = make_boot_image()
        [(index, loadable)] = list(image.sections_with_offsets())
        assert index == 0
        assert loadable.sect_type == SectionType.SRAM
        assert loadable.load_address == 0x10036100
        assert loadable.file_offset == BootImage.TEXT_OFFSET == 0xC0
        assert loadable.padded_length == 0x1F00
