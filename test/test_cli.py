import os
import subprocess
import sys

from conftest import (
    make_boot_image,
    make_nvdm_block,
    make_nvdm_item,
    make_ota_image,
    make_pt_image,
    need_to_install_package_err,
)

import pytest

try:
    from elftools.elf.elffile import ELFFile

    from amebazii import __version__
    from amebazii.bin_image import OTA_KEYS_SIZE
    from amebazii.enums import PartitionType
    from amebazii.flash import combine_flash
    from amebazii.nvdm import DataItemStatus
    from amebazii.sysctrl import SystemData
except ImportError:
    need_to_install_package_err()

CUSTOM_KEY = bytes(range(32))


def run_amebazii(args, allow_warnings=False, expect_failure=False):
    """Runs amebazii with the given arguments.
    Returns the command output (stdout and stderr).
    """
    cmd = [sys.executable, "-m", "amebazii"] + [str(a) for a in args]
    print("\nExecuting {}".format(" ".join(cmd)))
    if expect_failure:
        result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        output = result.stdout.decode("utf-8")
        print(output)
        assert result.returncode != 0, "amebazii should have failed"
        return output
    try:
        output = subprocess.check_output(cmd, stderr=subprocess.STDOUT)
        output = output.decode("utf-8")
        print(output)  # for more complete stdout logs on failure
        if not allow_warnings:
            assert "warning" not in output.lower(), "amebazii should not output warnings"
        return output
    except subprocess.CalledProcessError as e:
        print(e.output)
        raise


@pytest.fixture
def images(tmp_path):
    """Writes a partition table, boot image and OTA image, returns their paths"""
    paths = {}
    for name, image in (
        ("pt.bin", make_pt_image()),
        ("boot.bin", make_boot_image()),
        ("fw1.bin", make_ota_image()),
    ):
        paths[name] = tmp_path / name
        paths[name].write_bytes(image.to_bytes())
    return paths


@pytest.mark.host_test
class TestInfo:
    def test_version(self):
        out = run_amebazii(["version"])
        assert f"amebazii v{__version__}" in out
        assert out.strip().endswith(__version__)

    def test_ota_info(self, images):
        out = run_amebazii(["ota-info", images["fw1.bin"]])
        assert "Subimages: 2" in out
        assert "Subimage 0: FHWSS" in out
        assert "Subimage 1: XIP" in out
        assert "Segment size: 0x2ae0" in out
        assert "Serial: 100" in out
        assert "Hashing: SHA256" in out
        assert "Offset: 0x4000" in out
        assert "0x10000480" in out
        assert "(FAIL)" not in out
        assert out.count("(OK)") == 4  # signature, checksum, two subimages

    def test_ota_info_wrong_key(self, images):
        out = run_amebazii(["ota-info", images["fw1.bin"], "--key", CUSTOM_KEY.hex()])
        assert "OTA signature" in out
        assert "(FAIL)" in out

    def test_boot_info(self, images):
        out = run_amebazii(["boot-info", images["boot.bin"]])
        assert "Boot Image" in out
        assert "Text length: 0x1f00" in out
        assert "Entry point: 0x10036100" in out
        assert "(OK)" in out

    def test_pt_info(self, images):
        out = run_amebazii(["pt-info", images["pt.bin"]])
        assert "Partition Table" in out
        assert "(OK)" in out
        assert "OTA trap: disabled" in out
        for name, start, length in (
            ("BOOT", "0x00004000", "0x00008000"),
            ("FW1", "0x0000c000", "0x000f8000"),
            ("FW2", "0x00104000", "0x000f8000"),
        ):
            assert f"{name}  {start}  {length}" in out

    def test_invalid_image(self, tmp_path):
        path = tmp_path / "garbage.bin"
        path.write_bytes(b"\x12" * 0x100)
        out = run_amebazii(["ota-info", path], expect_failure=True)
        assert "A fatal error occurred" in out

    def test_missing_file(self, tmp_path):
        run_amebazii(["boot-info", tmp_path / "missing.bin"], expect_failure=True)

    def test_key_file(self, images, tmp_path):
        key_file = tmp_path / "ota.key"
        key_file.write_bytes(CUSTOM_KEY)
        out = run_amebazii(["ota-info", images["fw1.bin"], "-k", key_file])
        assert "(FAIL)" in out

    def test_invalid_key(self, images):
        out = run_amebazii(
            ["ota-info", images["fw1.bin"], "--key", "0102"], expect_failure=True
        )
        assert "Key must be 32 bytes long" in out


@pytest.mark.host_test
class TestResign:
    def test_resign(self, images, tmp_path):
        output = tmp_path / "resigned.bin"
        run_amebazii(
            ["resign", images["fw1.bin"], "-o", output, "--key", CUSTOM_KEY.hex()]
        )
        out = run_amebazii(["ota-info", output, "--key", CUSTOM_KEY.hex()])
        assert "(FAIL)" not in out
        out = run_amebazii(["ota-info", output])
        assert "(FAIL)" in out

    def test_resign_md5(self, images, tmp_path):
        output = tmp_path / "resigned.bin"
        run_amebazii(["resign", images["fw1.bin"], "-o", output, "--md5"])
        out = run_amebazii(["ota-info", output])
        assert "Hashing: MD5" in out
        assert "(FAIL)" not in out

    def test_verify_key(self, images, tmp_path):
        custom = tmp_path / "custom.bin"
        run_amebazii(
            ["resign", images["fw1.bin"], "-o", custom, "--key", CUSTOM_KEY.hex()]
        )
        out = run_amebazii(
            ["resign", custom, "-o", tmp_path / "default.bin"], allow_warnings=True
        )
        assert "signature doesn't verify" in out
        run_amebazii(
            [
                "resign",
                custom,
                "-o",
                tmp_path / "default.bin",
                "--verify-key",
                CUSTOM_KEY.hex(),
            ]
        )
        out = run_amebazii(["ota-info", tmp_path / "default.bin"])
        assert "(FAIL)" not in out

    def test_mutually_exclusive(self, images, tmp_path):
        out = run_amebazii(
            ["resign", images["fw1.bin"], "-o", tmp_path / "x.bin", "--md5", "--sha256"],
            expect_failure=True,
        )
        assert "mutually exclusive" in out


@pytest.mark.host_test
class TestFlash:
    def test_combine(self, images, tmp_path):
        output = tmp_path / "flash.bin"
        run_amebazii(
            [
                "combine-flash",
                "-o",
                output,
                "--pt",
                images["pt.bin"],
                "--boot",
                images["boot.bin"],
                "--fw1",
                images["fw1.bin"],
            ]
        )
        expected = combine_flash(
            make_pt_image(),
            {
                PartitionType.BOOT: make_boot_image(),
                PartitionType.FW1: make_ota_image(),
            },
        )
        assert output.read_bytes() == expected

    def test_combine_flash_size(self, images, tmp_path):
        output = tmp_path / "flash.bin"
        system = tmp_path / "sysdata.bin"
        system.write_bytes(SystemData(ota2_address=0x104000).to_bytes())
        run_amebazii(
            [
                "combine_flash",
                "-o",
                output,
                "--pt",
                images["pt.bin"],
                "--boot",
                images["boot.bin"],
                "--system",
                system,
                "--flash-size",
                "2M",
            ]
        )
        data = output.read_bytes()
        assert len(data) == 0x200000
        assert SystemData.from_bytes(data[0x1000:0x2000]).ota2_address == 0x104000

    def test_combine_without_record(self, images, tmp_path):
        user = tmp_path / "user.bin"
        user.write_bytes(b"\x01" * 0x100)
        out = run_amebazii(
            [
                "combine-flash",
                "-o",
                tmp_path / "flash.bin",
                "--pt",
                images["pt.bin"],
                "--boot",
                images["boot.bin"],
                "--user",
                user,
            ],
            expect_failure=True,
        )
        assert "Partition table has no USER record" in out

    def test_combine_too_small(self, images, tmp_path):
        out = run_amebazii(
            [
                "combine-flash",
                "-o",
                tmp_path / "flash.bin",
                "--pt",
                images["pt.bin"],
                "--boot",
                images["boot.bin"],
                "--fw1",
                images["fw1.bin"],
                "--flash-size",
                "1M",
            ],
            expect_failure=True,
        )
        assert "exceeds the flash size" in out

    def test_combine_pt_with_calibration(self, images, tmp_path):
        flash = tmp_path / "flash.bin"
        run_amebazii(
            ["combine-flash", "-o", flash, "--pt", images["pt.bin"], "--boot", images["boot.bin"]]
        )
        # reuse the first sector of a flash image as partition table
        pt = tmp_path / "pt_cal.bin"
        pt.write_bytes(flash.read_bytes()[:0x1000])
        output = tmp_path / "flash2.bin"
        run_amebazii(
            [
                "combine-flash",
                "-o",
                output,
                "--pt",
                pt,
                "--pt-has-calibration",
                "--boot",
                images["boot.bin"],
            ]
        )
        assert output.read_bytes() == flash.read_bytes()

    def test_split(self, images, tmp_path):
        flash = tmp_path / "flash.bin"
        run_amebazii(
            [
                "combine-flash",
                "-o",
                flash,
                "--pt",
                images["pt.bin"],
                "--boot",
                images["boot.bin"],
                "--fw1",
                images["fw1.bin"],
                "--flash-size",
                "0x104000",
            ]
        )
        output_dir = tmp_path / "split"
        out = run_amebazii(
            ["split-flash", flash, "-o", output_dir, "--include-common"],
            allow_warnings=True,
        )
        assert "BOOT" in out and "OK -> boot.bin (verified)" in out
        assert "OK -> fw1.bin (verified)" in out
        assert "FW2" in out and "SKIPPED" in out
        assert sorted(os.listdir(output_dir)) == [
            "boot.bin",
            "fw1.bin",
            "partition.bin",
            "sysdata.bin",
        ]
        data = flash.read_bytes()
        assert (output_dir / "boot.bin").read_bytes() == data[0x4000:0xC000]
        assert (output_dir / "fw1.bin").read_bytes() == data[0xC000:0x104000]
        assert (output_dir / "partition.bin").read_bytes() == data[:0x1000]
        assert (output_dir / "sysdata.bin").read_bytes() == data[0x1000:0x2000]

        out = run_amebazii(["pt-info", flash, "--offset", "0x20"])
        assert "(OK)" in out

    def test_split_corrupted(self, images, tmp_path):
        data = bytearray(
            combine_flash(
                make_pt_image(),
                {PartitionType.BOOT: make_boot_image(), PartitionType.FW1: make_ota_image()},
                flash_size=0x104000,
            )
        )
        data[0xC000 + OTA_KEYS_SIZE + 8] = 0x30
        flash = tmp_path / "flash.bin"
        flash.write_bytes(bytes(data))
        output_dir = tmp_path / "split"
        out = run_amebazii(
            ["split-flash", flash, "-o", output_dir], allow_warnings=True
        )
        assert "CORRUPT -> fw1.bin (Invalid ImageType value 0x30" in out
        assert "OK -> boot.bin (verified)" in out
        # the raw partition is written anyway
        assert (output_dir / "fw1.bin").read_bytes() == bytes(data[0xC000:0x104000])


@pytest.mark.host_test
class TestFlashInfo:
    def make_flash(self, tmp_path, corrupt=False):
        data = bytearray(
            combine_flash(
                make_pt_image(),
                {PartitionType.BOOT: make_boot_image(), PartitionType.FW1: make_ota_image()},
                flash_size=0x104000,
            )
        )
        if corrupt:
            data[0xC000 + OTA_KEYS_SIZE + 8] = 0x30
        flash = tmp_path / "flash.bin"
        flash.write_bytes(bytes(data))
        return flash

    def test_flash_info(self, tmp_path):
        out = run_amebazii(["flash-info", self.make_flash(tmp_path)], allow_warnings=True)
        assert "Size: 0x104000" in out
        assert "Calibration pattern: " in out and "(OK)" in out
        assert "Partition Table" in out
        assert "System Data" in out
        assert "Partitions" in out
        assert "BOOT     offset 0x004000, length 0x008000: OK (verified)" in out
        assert "FW1      offset 0x00c000, length 0x0f8000: OK (verified)" in out
        assert "FW2      offset 0x104000, length 0x0f8000: SKIPPED" in out

    def test_corrupted_partition(self, tmp_path):
        out = run_amebazii(
            ["flash-info", self.make_flash(tmp_path, corrupt=True)], allow_warnings=True
        )
        assert "FW1      offset 0x00c000, length 0x0f8000: CORRUPT (Invalid ImageType" in out

    def test_pt_only(self, tmp_path):
        out = run_amebazii(["flash-info", self.make_flash(tmp_path), "--pt-only"])
        assert "Partition Table" in out
        assert "Calibration pattern" not in out
        assert "System Data" not in out
        assert "Partitions" not in out

    def test_custom_keys(self, tmp_path):
        pt_image = make_pt_image(build=False)
        pt_image.build(CUSTOM_KEY)
        flash = tmp_path / "flash.bin"
        flash.write_bytes(
            combine_flash(pt_image, {PartitionType.BOOT: make_boot_image()})
        )
        out = run_amebazii(["flash-info", flash], allow_warnings=True)
        assert "(FAIL)" in out
        (tmp_path / "amebazii.cfg").write_text(
            f"[amebazii]\nhash_key = {CUSTOM_KEY.hex()}\n"
        )
        out = run_amebazii(["flash-info", flash], allow_warnings=True)
        assert "(FAIL)" not in out
        assert "(OK)" in out
        assert "BOOT     offset 0x004000, length 0x008000: OK (verification failed)" in out


def nvdm_store():
    first = make_nvdm_block(
        [
            make_nvdm_item("wifi", "ssid", b"home\x00", index=0),
            make_nvdm_item("wifi", "passwd", b"secret", index=1),
            make_nvdm_item("wifi", "ssid", b"old\x00", DataItemStatus.DELETE, index=0),
        ]
    )
    second = make_nvdm_block([make_nvdm_item("bt", "addr", b"")], erase_count=3)
    return first + second


@pytest.mark.host_test
class TestNvdmInfo:
    @pytest.fixture
    def var(self, tmp_path):
        path = tmp_path / "var.bin"
        path.write_bytes(nvdm_store())
        return path

    def test_nvdm_info(self, var):
        out = run_amebazii(["nvdm-info", var])
        assert "PEB size: 0x1000" in out
        assert "[0] ACTIVED, erase count 1, 3 items" in out
        assert "[1] ACTIVED, erase count 3, 1 items" in out
        assert "Group wifi" in out and "Group bt" in out
        assert "[0] ssid (valid)" in out
        assert "[0] ssid (deleted)" in out
        assert "[1] passwd (valid)" in out
        assert "73 65 63 72 65 74" in out
        assert "(empty)" in out

    def test_list_groups(self, var):
        out = run_amebazii(["nvdm-info", var, "--list-groups"])
        assert "Groups" in out
        assert out.index("bt") < out.index("wifi")
        assert "ssid" not in out

    def test_filters(self, var):
        out = run_amebazii(["nvdm-info", var, "--only-valid"])
        assert "(deleted)" not in out
        assert "[0] ssid (valid)" in out
        out = run_amebazii(["nvdm-info", var, "-g", "bt"])
        assert "Group bt" in out
        assert "Group wifi" not in out
        out = run_amebazii(["nvdm-info", var, "-i", "passwd"])
        assert "[1] passwd (valid)" in out
        assert "ssid" not in out

    def test_unknown_group(self, var):
        out = run_amebazii(["nvdm-info", var, "-g", "zigbee"], allow_warnings=True)
        assert "Group 'zigbee' not found" in out

    def test_block_size(self, tmp_path):
        path = tmp_path / "var.bin"
        path.write_bytes(
            make_nvdm_block([make_nvdm_item("wifi", "ssid", b"x")], peb_size=0x800)
        )
        out = run_amebazii(["nvdm-info", path, "-b", "2k"])
        assert "PEB size: 0x800" in out
        assert "[0] ssid (valid)" in out

    def test_exclusive_options(self, var):
        out = run_amebazii(
            ["nvdm-info", var, "--list-groups", "-g", "wifi"], expect_failure=True
        )
        assert "mutually exclusive" in out

    def test_from_flash(self, tmp_path):
        pt_image = make_pt_image(
            [
                (PartitionType.BOOT, 0x4000, 0x8000),
                (PartitionType.VAR, 0xC000, 0x2000),
            ]
        )
        flash = tmp_path / "flash.bin"
        flash.write_bytes(
            combine_flash(
                pt_image,
                {PartitionType.BOOT: make_boot_image(), PartitionType.VAR: nvdm_store()},
            )
        )
        out = run_amebazii(["nvdm-info", flash, "--flash"])
        assert "VAR partition at 0xc000, 0x2000 bytes" in out
        assert "[1] passwd (valid)" in out

    def test_from_flash_without_record(self, tmp_path):
        flash = tmp_path / "flash.bin"
        flash.write_bytes(
            combine_flash(make_pt_image(), {PartitionType.BOOT: make_boot_image()})
        )
        out = run_amebazii(["nvdm-info", flash, "--flash"], expect_failure=True)
        assert "Partition table has no VAR record" in out


@pytest.mark.host_test
class TestRelink:
    def test_relink(self, images, tmp_path):
        output = tmp_path / "fw1.elf"
        out = run_amebazii(["relink", images["fw1.bin"], "-o", output])
        assert ".ram.code_text" in out
        assert ".xip.code_c" in out
        with open(output, "rb") as f:
            elf = ELFFile(f)
            assert elf["e_entry"] == 0x10000480
            assert elf.num_segments() == 4

    def test_relink_boot(self, images, tmp_path):
        output = tmp_path / "boot.elf"
        run_amebazii(["relink", images["boot.bin"], "-o", output, "--boot"])
        with open(output, "rb") as f:
            elf = ELFFile(f)
            assert elf["e_entry"] == 0x10036100
            assert elf.num_segments() == 1

    def test_cap_length_from_config(self, images, tmp_path):
        (tmp_path / "amebazii.cfg").write_text("[amebazii]\ncap_length = true\n")
        output = tmp_path / "fw1.elf"
        subprocess.check_call(
            [sys.executable, "-m", "amebazii", "relink", str(images["fw1.bin"]), "-o", str(output)],
            cwd=tmp_path,
        )
        with open(output, "rb") as f:
            segments = list(ELFFile(f).iter_segments())
            assert segments[-1]["p_memsz"] == 0x1234


@pytest.mark.host_test
class TestGlobalOptions:
    def test_silent(self, images):
        out = run_amebazii(["-s", "boot-info", images["boot.bin"]])
        assert out == ""

    def test_verbose_and_silent(self):
        out = run_amebazii(["-v", "-s", "version"], expect_failure=True)
        assert "mutually exclusive" in out

    def test_config_hash_key(self, tmp_path):
        pt_image = make_pt_image(build=False)
        pt_image.build(CUSTOM_KEY)
        path = tmp_path / "pt.bin"
        path.write_bytes(pt_image.to_bytes())
        (tmp_path / "amebazii.cfg").write_text(
            f"[amebazii]\nhash_key = {CUSTOM_KEY.hex()}\n"
        )
        out = subprocess.check_output(
            [sys.executable, "-m", "amebazii", "pt-info", str(path)],
            cwd=tmp_path,
            stderr=subprocess.STDOUT,
        ).decode("utf-8")
        print(out)
        assert "Loaded custom configuration from" in out
        assert "(OK)" in out

    def test_config_keys_split(self, tmp_path):
        pt_image = make_pt_image(build=False)
        pt_image.build(CUSTOM_KEY)
        ota = make_ota_image(build=False)
        ota.build(CUSTOM_KEY)
        flash = tmp_path / "flash.bin"
        flash.write_bytes(
            combine_flash(
                pt_image,
                {PartitionType.BOOT: make_boot_image(), PartitionType.FW1: ota},
                flash_size=0x104000,
            )
        )
        (tmp_path / "amebazii.cfg").write_text(
            f"[amebazii]\nhash_key = {CUSTOM_KEY.hex()}\nota_key = {CUSTOM_KEY.hex()}\n"
        )
        out = run_amebazii(
            ["split-flash", flash, "-o", tmp_path / "split"], allow_warnings=True
        )
        assert "OK -> fw1.bin (verified)" in out
        # boot image is still hashed with the default key
        assert "OK -> boot.bin (verification failed)" in out

    def test_arguments_file(self, images, tmp_path):
        args = tmp_path / "args.txt"
        args.write_text(f"boot-info\n{images['boot.bin']}\n")
        out = run_amebazii([f"@{args}"])
        assert "Entry point: 0x10036100" in out
