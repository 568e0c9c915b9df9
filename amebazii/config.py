# SPDX-FileCopyrightText: 2014-2025 Espressif Systems (Shanghai) CO LTD,
# amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

import configparser
import os

from .logger import log
from .util import ConfigError

SECTION = "amebazii"

# Memory map overrides, option name -> region name
MEMORY_MAP_OPTIONS = {
    "ram_vector": "VECTORS_RAM",
    "ram_func_table": "RAM_FUN_TABLE",
    "ram_img_signature": "RAM_IMG_SIGN",
    "ram_text": "DTCM_RAM",
    "ext_ram": "EXTENSION_RAM",
    "psram_text": "PSRAM",
    "xip_c_text": "XIP_FLASH_C",
    "xip_p_text": "XIP_FLASH_P",
}

CONFIG_OPTIONS = [
    "hash_key",
    "ota_key",
    "flash_size",
    "cap_length",
] + list(MEMORY_MAP_OPTIONS)


def _validate_config_file(file_path, verbose=False):
    if not os.path.exists(file_path):
        return False

    cfg = configparser.RawConfigParser()
    try:
        cfg.read(file_path, encoding="UTF-8")
        # Only consider it a valid config file if it contains [amebazii] section
        if cfg.has_section(SECTION):
            if verbose:
                unknown_opts = list(set(cfg.options(SECTION)) - set(CONFIG_OPTIONS))
                unknown_opts.sort()
                no_of_unknown_opts = len(unknown_opts)
                if no_of_unknown_opts > 0:
                    suffix = "s" if no_of_unknown_opts > 1 else ""
                    log.note(
                        "Ignoring unknown config file option{}: {}".format(
                            suffix, ", ".join(unknown_opts)
                        )
                    )
            return True
    except (UnicodeDecodeError, configparser.Error) as e:
        if verbose:
            log.note(f"Ignoring invalid config file {file_path}: {e}")
    return False


def _find_config_file(dir_path, verbose=False):
    for candidate in ("amebazii.cfg", "setup.cfg", "tox.ini"):
        cfg_path = os.path.join(dir_path, candidate)
        if _validate_config_file(cfg_path, verbose):
            return cfg_path
    return None


def load_config_file(verbose=False):
    set_with_env_var = False
    cfg_file_path = None
    env_var_path = os.environ.get("AMEBAZII_CFGFILE")
    if env_var_path is not None and _validate_config_file(env_var_path):
        cfg_file_path = env_var_path
        set_with_env_var = True
    else:
        home_dir = os.path.expanduser("~")
        os_config_dir = (
            f"{home_dir}/.config/amebazii"
            if os.name == "posix"
            else f"{home_dir}/AppData/Local/amebazii/"
        )
        # Search priority: 1) current dir, 2) OS specific config dir, 3) home dir
        for dir_path in (os.getcwd(), os_config_dir, home_dir):
            cfg_file_path = _find_config_file(dir_path, verbose)
            if cfg_file_path:
                break

    cfg = configparser.ConfigParser()
    cfg[SECTION] = {}  # Create an empty config for when no file is found

    if cfg_file_path is not None:
        # If config file is found and validated, read and parse it
        cfg.read(cfg_file_path)
        if verbose:
            msg = " (set with AMEBAZII_CFGFILE)" if set_with_env_var else ""
            log.print(
                f"Loaded custom configuration from "
                f"{os.path.abspath(cfg_file_path)}{msg}"
            )
    return cfg, cfg_file_path


def get_key(cfg, option, default=None):
    """Read a 32 byte key stored as 64 hex characters"""
    value = cfg[SECTION].get(option)
    if value is None:
        return default
    try:
        key = bytes.fromhex(value.strip())
    except ValueError:
        raise ConfigError(f"Config option '{option}' is not a hex string")
    if len(key) != 32:
        raise ConfigError(
            f"Config option '{option}' must hold 32 bytes, got {len(key)}"
        )
    return key


def get_int(cfg, option, default=None):
    value = cfg[SECTION].get(option)
    if value is None:
        return default
    try:
        return int(value.strip(), 0)
    except ValueError:
        raise ConfigError(f"Config option '{option}' is not a valid integer: {value}")


def get_bool(cfg, option, default=False):
    try:
        return cfg[SECTION].getboolean(option, fallback=default)
    except ValueError as e:
        raise ConfigError(f"Config option '{option}': {e}")


def get_memory_map_overrides(cfg):
    """
    Return {region name: (start, end)} for every memory region overridden
    in the config file as 'start:end'.
    """
    overrides = {}
    for option, region in MEMORY_MAP_OPTIONS.items():
        value = cfg[SECTION].get(option)
        if value is None:
            continue
        try:
            start, end = (int(v.strip(), 0) for v in value.split(":"))
        except ValueError:
            raise ConfigError(
                f"Config option '{option}' must be given as 'start:end', got {value}"
            )
        if end <= start:
            raise ConfigError(f"Config option '{option}' has an empty range")
        overrides[region] = (start, end)
    return overrides
