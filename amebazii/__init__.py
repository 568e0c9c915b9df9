# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

__all__ = [
    "boot_info",
    "combine_flash",
    "combine_flash_image",
    "flash_info",
    "load_boot_image",
    "load_nvdm",
    "load_ota_image",
    "load_partition_table",
    "nvdm_info",
    "ota_info",
    "pt_info",
    "relink",
    "resign",
    "split_flash",
    "split_flash_image",
    "version",
]

__version__ = "0.1.0"

import shlex
import sys

import rich_click as click

from amebazii.bin_image import load_boot_image, load_ota_image
from amebazii.cli_util import (
    AnyIntType,
    AutoSizeType,
    Group,
    KeyType,
    MutuallyExclusiveOption,
)
from amebazii.cmds import (
    boot_info,
    combine_flash_image,
    default_keys,
    flash_info,
    nvdm_info,
    ota_info,
    pt_info,
    relink,
    resign,
    split_flash_image,
    version,
)
from amebazii.config import (
    get_bool,
    get_int,
    get_memory_map_overrides,
    load_config_file,
)
from amebazii.enums import HashAlgo
from amebazii.flash import combine_flash, split_flash
from amebazii.logger import log
from amebazii.nvdm import DEFAULT_PEB_SIZE, load_nvdm
from amebazii.partition import load_partition_table
from amebazii.relink import default_memory_map
from amebazii.util import FatalError

# Show arguments in the help output, this was default in argparse
click.rich_click.SHOW_ARGUMENTS = True
# Force alignment of commands table with groups
click.rich_click.STYLE_COMMANDS_TABLE_COLUMN_WIDTH_RATIO = (1, 3)
# Option group definitions, used for grouping options in the help output
click.rich_click.OPTION_GROUPS = {
    "amebazii combine-flash": [
        {
            "name": "Partition images",
            "options": ["--boot", "--fw1", "--fw2", "--user", "--system"],
        },
    ],
}
click.rich_click.COMMAND_GROUPS = {
    "amebazii": [
        {
            "name": "Image commands",
            "commands": ["ota-info", "boot-info", "pt-info", "resign", "relink"],
        },
        {
            "name": "Flash commands",
            "commands": ["split-flash", "combine-flash", "flash-info", "nvdm-info"],
        },
        {
            "name": "Other commands",
            "commands": ["version"],
        },
    ],
}

############################### GLOBAL OPTIONS AND MAIN ###############################


@click.group(
    cls=Group,
    no_args_is_help=True,
    context_settings=dict(help_option_names=["-h", "--help"], max_content_width=120),
    help=f"amebazii v{__version__} - parse, build, resign and relink "
    "Realtek AmebaZ2 firmware images.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    cls=MutuallyExclusiveOption,
    exclusive_with=["silent"],
    help="Print debug output.",
)
@click.option(
    "--silent",
    "-s",
    is_flag=True,
    cls=MutuallyExclusiveOption,
    exclusive_with=["verbose"],
    help="Print only errors.",
)
@click.pass_context
def cli(ctx, verbose, silent):
    ctx.ensure_object(dict)
    if verbose:
        log.set_verbosity("verbose")
    elif silent:
        log.set_verbosity("silent")
    log.print(f"amebazii v{__version__}")
    cfg, _ = load_config_file(verbose=True)
    ctx.obj["cfg"] = cfg
    ctx.obj["hash_key"], ctx.obj["ota_key"] = default_keys(cfg)


def add_key_option(help_text):
    def wrapper(function):
        return click.option("--key", "-k", type=KeyType(), help=help_text)(function)

    return wrapper


@cli.command("ota-info")
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
@add_key_option("Key to verify the OTA signature and subimage hashes.")
@click.pass_context
def ota_info_cli(ctx, filename, key):
    """Print information about an OTA (application) image."""
    ota_info(filename, key or ctx.obj["ota_key"])


@cli.command("boot-info")
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
@add_key_option("HMAC key of the boot image hash.")
@click.pass_context
def boot_info_cli(ctx, filename, key):
    """Print information about a boot image."""
    boot_info(filename, key or ctx.obj["hash_key"])


@cli.command("pt-info")
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
@add_key_option("HMAC key of the partition table hash.")
@click.option(
    "--offset",
    type=AnyIntType(),
    default=0,
    help="Offset of the partition table in the file, 0x20 for a flash image.",
)
@click.pass_context
def pt_info_cli(ctx, filename, key, offset):
    """Print the records of a partition table image."""
    pt_info(filename, key or ctx.obj["hash_key"], offset)


@cli.command("resign")
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=str, required=True, help="Output filename.")
@add_key_option("Signing key, defaults to the configured or built-in OTA key.")
@click.option(
    "--md5",
    is_flag=True,
    cls=MutuallyExclusiveOption,
    exclusive_with=["sha256"],
    help="Switch all subimages to MD5 hashes.",
)
@click.option(
    "--sha256",
    is_flag=True,
    cls=MutuallyExclusiveOption,
    exclusive_with=["md5"],
    help="Switch all subimages to SHA-256 hashes.",
)
@click.option(
    "--hash-pubkey",
    type=KeyType(),
    help="Replace the hash public key stored in the key block.",
)
@click.option(
    "--verify-key",
    type=KeyType(),
    help="Key the input image is checked against, defaults to the configured "
    "or built-in OTA key.",
)
@click.pass_context
def resign_cli(ctx, filename, output, key, md5, sha256, hash_pubkey, verify_key):
    """Sign an OTA image with a new key."""
    hash_algo = HashAlgo.MD5 if md5 else HashAlgo.SHA256 if sha256 else None
    resign(
        filename,
        output,
        key or ctx.obj["ota_key"],
        hash_algo,
        hash_pubkey,
        verify_key or ctx.obj["ota_key"],
    )


@cli.command("split-flash")
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--output-dir", "-o", type=str, required=True, help="Output directory."
)
@click.option(
    "--include-common",
    is_flag=True,
    help="Also write the partition table and system data blocks.",
)
@click.option(
    "--no-decode",
    is_flag=True,
    help="Only copy the partitions, don't decode and verify them.",
)
@click.pass_context
def split_flash_cli(ctx, filename, output_dir, include_common, no_decode):
    """Split a flash image into its partitions."""
    split_flash_image(
        filename,
        output_dir,
        include_common,
        decode=not no_decode,
        hash_key=ctx.obj["hash_key"],
        ota_key=ctx.obj["ota_key"],
    )


@cli.command("combine-flash")
@click.option("--output", "-o", type=str, required=True, help="Output filename.")
@click.option(
    "--pt",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
    help="Partition table image.",
)
@click.option(
    "--pt-has-calibration",
    is_flag=True,
    help="The partition table file starts with the flash calibration pattern.",
)
@click.option("--boot", type=click.Path(exists=True, dir_okay=False), help="Boot image.")
@click.option("--fw1", type=click.Path(exists=True, dir_okay=False), help="Firmware 1.")
@click.option("--fw2", type=click.Path(exists=True, dir_okay=False), help="Firmware 2.")
@click.option("--user", type=click.Path(exists=True, dir_okay=False), help="User data.")
@click.option(
    "--system",
    type=click.Path(exists=True, dir_okay=False),
    help="System data, a default block is used if not given.",
)
@click.option(
    "--flash-size",
    type=AutoSizeType(),
    help="Flash size, partitions past it are rejected and the output is padded "
    "up to it. Accepts 'k' and 'M' suffixes.",
)
@click.option(
    "--allow-partial",
    is_flag=True,
    help="Skip partitions that don't fit instead of aborting.",
)
@click.pass_context
def combine_flash_cli(ctx, output, pt, pt_has_calibration, flash_size, **kwargs):
    """Combine a partition table and partition images into a flash image."""
    if flash_size is None:
        flash_size = get_int(ctx.obj["cfg"], "flash_size")
    combine_flash_image(
        output,
        pt,
        flash_size=flash_size,
        pt_has_calibration=pt_has_calibration,
        hash_key=ctx.obj["hash_key"],
        **kwargs,
    )


@cli.command("flash-info")
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--pt-only",
    is_flag=True,
    help="Only print the partition table of the flash image.",
)
@click.pass_context
def flash_info_cli(ctx, filename, pt_only):
    """Print the partition table, system data and partitions of a flash image."""
    flash_info(filename, ctx.obj["hash_key"], ctx.obj["ota_key"], pt_only)


@cli.command("nvdm-info")
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--flash",
    "from_flash",
    is_flag=True,
    help="The file is a flash image, read its VAR partition.",
)
@click.option(
    "--list-groups",
    is_flag=True,
    cls=MutuallyExclusiveOption,
    exclusive_with=["group", "item"],
    help="Only print the group names.",
)
@click.option("--only-valid", is_flag=True, help="Skip deleted items.")
@click.option(
    "--group",
    "-g",
    type=str,
    cls=MutuallyExclusiveOption,
    exclusive_with=["list_groups"],
    help="Only print the items of this group.",
)
@click.option(
    "--item",
    "-i",
    type=str,
    cls=MutuallyExclusiveOption,
    exclusive_with=["list_groups"],
    help="Only print items with this name.",
)
@click.option(
    "--block-size",
    "-b",
    type=AutoSizeType(),
    default=DEFAULT_PEB_SIZE,
    help="Erase block size of the store. Accepts 'k' and 'M' suffixes.",
)
@click.pass_context
def nvdm_info_cli(
    ctx, filename, from_flash, list_groups, only_valid, group, item, block_size
):
    """Print the items of the NVDM store in a VAR partition."""
    nvdm_info(
        filename,
        block_size,
        list_groups=list_groups,
        only_valid=only_valid,
        group=group,
        item=item,
        from_flash=from_flash,
        hash_key=ctx.obj["hash_key"],
    )


@cli.command("relink")
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=str, required=True, help="Output ELF filename.")
@click.option("--boot", is_flag=True, help="The input is a boot image.")
@click.option(
    "--cap-length",
    is_flag=True,
    help="Use the section lengths without flash padding as segment memory size.",
)
@click.pass_context
def relink_cli(ctx, filename, output, boot, cap_length):
    """Rebuild an ELF file from the sections of an image."""
    cfg = ctx.obj["cfg"]
    cap_length = cap_length or get_bool(cfg, "cap_length")
    memory_map = default_memory_map(get_memory_map_overrides(cfg))
    relink(
        filename,
        output,
        boot,
        cap_length,
        memory_map,
        hash_key=ctx.obj["hash_key"],
        ota_key=ctx.obj["ota_key"],
    )


@cli.command("version")
def version_cli():
    """Print amebazii version."""
    version()


def main(argv: list[str] | None = None):
    """
    Main function for amebazii

    argv - Optional override for default arguments parsing (that uses sys.argv),
    can be a list of custom arguments as strings. Arguments and their values
    need to be added as individual items to the list
    e.g. "-o out.bin" thus becomes ['-o', 'out.bin'].
    """
    args = expand_file_arguments(argv or sys.argv[1:])
    cli(args=args)


def expand_file_arguments(argv: list[str]) -> list[str]:
    """
    Any argument starting with "@" gets replaced with all values read from a text file.
    Text file arguments can be split by newline or by space.
    Values are added "as-is", as if they were specified in this order
    on the command line.
    """
    new_args = []
    expanded = False
    for arg in argv:
        if arg.startswith("@"):
            expanded = True
            with open(arg[1:], "r") as f:
                for line in f.readlines():
                    new_args += shlex.split(line)
        else:
            new_args.append(arg)
    if expanded:
        log.print(f"amebazii {' '.join(new_args)}")
        return new_args
    return argv


def _main():
    try:
        main()
    except FatalError as e:
        log.error(f"\nA fatal error occurred: {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        log.error("KeyboardInterrupt: Run cancelled by user.")
        sys.exit(2)


if __name__ == "__main__":
    _main()
