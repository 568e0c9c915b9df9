import os
import re

from setuptools import find_packages, setup


def get_version():
    with open(os.path.join("amebazii", "__init__.py")) as f:
        return re.search(r'^__version__ = "([^"]+)"', f.read(), re.M).group(1)


entry_points = {
    "console_scripts": [
        "amebazii=amebazii.__init__:_main",
    ],
}

setup(
    name="amebazii",
    version=get_version(),
    description="Parse, build, resign and relink Realtek AmebaZ2 firmware images",
    license="GPLv2+",
    python_requires=">=3.10",
    packages=find_packages(include=["amebazii", "amebazii.*"]),
    install_requires=[
        "rich_click",
        "cryptography>=43.0.0",
        "hexdump",
        "makeelf",
    ],
    extras_require={
        "dev": [
            "pyelftools",
            "pytest",
        ],
    },
    entry_points=entry_points,
)
