# SPDX-FileCopyrightText: 2024-2025 amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

import hashlib

from cryptography.hazmat.primitives import constant_time, hashes
from cryptography.hazmat.primitives.hmac import HMAC

from .enums import HashAlgo
from .util import BuildError

CHECKSUM_MASK = 0xFFFFFFFF


def sha256(data: bytes) -> bytes:
    digest = hashlib.sha256()
    digest.update(data)
    return digest.digest()


def md5(data: bytes) -> bytes:
    digest = hashlib.md5()
    digest.update(data)
    return digest.digest()


def _hmac(algorithm, key: bytes, data: bytes) -> bytes:
    mac = HMAC(key, algorithm)
    mac.update(data)
    return mac.finalize()


def hmac_sha256(key: bytes, data: bytes) -> bytes:
    return _hmac(hashes.SHA256(), key, data)


def hmac_md5(key: bytes, data: bytes) -> bytes:
    return _hmac(hashes.MD5(), key, data)


def compute_hash(algo: HashAlgo, data: bytes, key: bytes | None = None) -> bytes:
    """
    Digest data with the given algorithm, keyed (HMAC) when a key is passed.
    """
    if algo == HashAlgo.SHA256:
        return sha256(data) if key is None else hmac_sha256(key, data)
    if algo == HashAlgo.MD5:
        return md5(data) if key is None else hmac_md5(key, data)
    raise BuildError(f"Unsupported hash algorithm {algo!r}")


def verify_hash(
    algo: HashAlgo, data: bytes, expected: bytes, key: bytes | None = None
) -> bool:
    """Recompute a digest and compare it in constant time.

    Only the algorithm's digest width of expected is compared, so an MD5
    digest stored in a 32 byte slot verifies too.
    """
    calculated = compute_hash(algo, data, key)
    return constant_time.bytes_eq(calculated, bytes(expected[: len(calculated)]))


def checksum(data: bytes) -> int:
    """Additive checksum: sum of all bytes, truncated to 32 bits"""
    return sum(data) & CHECKSUM_MASK
