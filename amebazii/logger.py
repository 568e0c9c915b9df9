# SPDX-FileCopyrightText: 2025 Espressif Systems (Shanghai) CO LTD,
# amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

from abc import ABC, abstractmethod
import sys
import os


class TemplateLogger(ABC):
    @abstractmethod
    def print(self, *args, **kwargs):
        """
        Log a plain message.
        """
        pass

    @abstractmethod
    def note(self, message: str):
        """
        Log a Note: message.
        """
        pass

    @abstractmethod
    def warning(self, message: str):
        """
        Log a Warning: message.
        """
        pass

    @abstractmethod
    def error(self, message: str):
        """
        Log an error message.
        """
        pass

    @abstractmethod
    def debug(self, message: str):
        """
        Log a message shown in verbose mode only.
        """
        pass

    @abstractmethod
    def set_verbosity(self, verbosity: str):
        """
        Set the verbosity level.
        """
        pass


class AmebaziiLogger(TemplateLogger):
    ansi_red: str = ""
    ansi_yellow: str = ""
    ansi_blue: str = ""
    ansi_gray: str = ""
    ansi_normal: str = ""

    _smart_features: bool = False
    _verbosity: str | None = None
    _print_anyway: bool = False

    def __new__(cls):
        """
        Singleton to ensure only one instance of the logger exists.
        """
        if not hasattr(cls, "instance"):
            cls.instance = super(AmebaziiLogger, cls).__new__(cls)
            cls.instance.set_verbosity("auto")
        return cls.instance

    @classmethod
    def _set_smart_features(cls, override: bool | None = None):
        # Check for smart terminal and color support
        if override is not None:
            cls.instance._smart_features = override
        else:
            is_tty = hasattr(sys.stdout, "isatty") and sys.stdout.isatty()
            term = os.getenv("TERM", "").lower()
            no_color = os.getenv("NO_COLOR", "").strip().lower() in ("1", "true", "yes")
            cls.instance._smart_features = (
                is_tty and term not in ("", "dumb") and not no_color
            )

        if cls.instance._smart_features:
            cls.instance.ansi_red = "\033[1;31m"
            cls.instance.ansi_yellow = "\033[0;33m"
            cls.instance.ansi_blue = "\033[1;36m"
            cls.instance.ansi_gray = "\033[0;90m"
            cls.instance.ansi_normal = "\033[0m"
        else:
            cls.instance.ansi_red = ""
            cls.instance.ansi_yellow = ""
            cls.instance.ansi_blue = ""
            cls.instance.ansi_gray = ""
            cls.instance.ansi_normal = ""

    def print(self, *args, **kwargs):
        """
        Log a plain message.
        """
        if self._verbosity == "silent" and not self._print_anyway:
            return
        print(*args, **kwargs)
        self._print_anyway = False

    def note(self, message: str):
        """
        Log a Note: message in blue and white.
        """
        self.print(f"{self.ansi_blue}Note:{self.ansi_normal} {message}")

    def warning(self, message: str):
        """
        Log a Warning: message in yellow and white.
        """
        self.print(f"{self.ansi_yellow}Warning:{self.ansi_normal} {message}")

    def error(self, message: str):
        """
        Log an error message in red to stderr.
        """
        formatted_message = f"{self.ansi_red}{message}{self.ansi_normal}"
        self._print_anyway = True
        self.print(formatted_message, file=sys.stderr)

    def debug(self, message: str):
        """
        Log a gray message, only when running verbose.
        """
        if self._verbosity != "verbose":
            return
        self.print(f"{self.ansi_gray}{message}{self.ansi_normal}")

    def set_logger(self, new_logger):
        self.__class__ = new_logger.__class__

    def set_verbosity(self, verbosity: str):
        """
        Set the verbosity level to one of the following:
        - "auto": Enable colors if supported by the terminal
        - "verbose": Also print debug messages, no colors
        - "silent": Disable all output except errors
        """
        if verbosity == self._verbosity:
            return

        self._verbosity = verbosity
        if verbosity == "auto":
            self._set_smart_features()
        elif verbosity == "verbose":
            self._set_smart_features(override=False)
        elif verbosity == "silent":
            pass
        else:
            raise ValueError(f"Invalid verbosity level: {verbosity}")


log = AmebaziiLogger()
