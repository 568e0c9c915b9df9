# SPDX-FileCopyrightText: 2025 Espressif Systems (Shanghai) CO LTD,
# amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

import os

import rich_click as click

from .logger import log

################################ Custom types #################################


class AnyIntType(click.ParamType):
    """Custom type to parse any integer value - decimal, hex, octal, or binary"""

    name = "integer"

    def convert(
        self, value: str, param: click.Parameter | None, ctx: click.Context
    ) -> int:
        if isinstance(value, int):  # default value is already an int
            return value
        try:
            return arg_auto_int(value)
        except ValueError:
            raise click.BadParameter(f"{value!r} is not a valid integer.")


class AutoSizeType(AnyIntType):
    """Similar to AnyIntType but allows 'k', 'M' suffixes for kilo(1024), Mega(1024^2)"""

    def convert(
        self, value: str, param: click.Parameter | None, ctx: click.Context
    ) -> int:
        if isinstance(value, str) and value[-1:] in ("k", "M"):
            try:
                num = arg_auto_int(value[:-1])
            except ValueError:
                raise click.BadParameter(f"{value!r} is not a valid integer")
            return num * (1024 if value[-1] == "k" else 1024 * 1024)
        return super().convert(value, param, ctx)


class KeyType(click.ParamType):
    """Custom type for 32 byte keys, given as 64 hex characters or a key file"""

    name = "key"
    KEY_SIZE = 32

    def convert(
        self, value: str, param: click.Parameter | None, ctx: click.Context
    ) -> bytes:
        if isinstance(value, bytes):
            return value
        if os.path.isfile(value):
            with open(value, "rb") as f:
                key = f.read()
            # accept hex encoded key files too
            try:
                key = bytes.fromhex(key.decode("ascii").strip())
            except (UnicodeDecodeError, ValueError):
                pass
        else:
            try:
                key = bytes.fromhex(value)
            except ValueError:
                raise click.BadParameter(
                    f"{value!r} is neither a key file nor a hex string."
                )
        if len(key) != self.KEY_SIZE:
            raise click.BadParameter(
                f"Key must be {self.KEY_SIZE} bytes long, got {len(key)}."
            )
        return key


########################### Custom option/argument ############################


class Group(click.RichGroup):
    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        """Allow dash and underscore for commands"""
        rv = click.Group.get_command(self, ctx, cmd_name)
        if rv is not None:
            return rv
        for cmd in self.list_commands(ctx):
            cmd_alias = cmd.replace("-", "_")
            if cmd_alias == cmd_name:
                log.debug(f"Using command '{cmd}' for '{cmd_name}'")
                return click.Group.get_command(self, ctx, cmd)
        return None

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        # always return the full command name
        _, cmd, args = super().resolve_command(ctx, args)
        if cmd is None:
            return None, None, args
        return cmd.name, cmd, args


class MutuallyExclusiveOption(click.Option):
    """Custom option class to enforce mutually exclusive options in click.
    Similar to argparse function `add_mutually_exclusive_group`.

    For example, `--md5` and `--sha256` are mutually exclusive options.
    """

    def __init__(self, *args, **kwargs):
        self.mutually_exclusive = set(kwargs.pop("exclusive_with", []))
        if self.mutually_exclusive:
            ex_str = ", ".join(
                [self._to_option_name(opt) for opt in self.mutually_exclusive]
            )
            kwargs["help"] = (
                f"{kwargs.get('help', '')} NOTE: This argument is mutually exclusive "
                f"with arguments: {ex_str}."
            )
        super(MutuallyExclusiveOption, self).__init__(*args, **kwargs)

    def _to_option_name(self, name: str) -> str:
        """Convert dictionary entry for option ('my_name') to click option name
        ('--my-name')."""
        return f"--{name.replace('_', '-')}"

    def handle_parse_result(self, ctx, opts, args):
        if self.mutually_exclusive.intersection(opts) and self.name in opts:
            options = ", ".join(
                [self._to_option_name(opt) for opt in self.mutually_exclusive]
            )
            raise click.UsageError(
                f"Illegal usage: {self._to_option_name(self.name)} is mutually "
                f"exclusive with arguments: {options}."
            )
        return super(MutuallyExclusiveOption, self).handle_parse_result(ctx, opts, args)


############################## Helper functions ###############################


def arg_auto_int(x: str) -> int:
    """Parse an integer value in any base"""
    return int(x, 0)
