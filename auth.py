#!/usr/bin/env python3
"""
Password hashing and HTTP Basic credential parsing.

Hashes are stored as ``scrypt$<n>$<r>$<p>$<salt>$<digest>`` with base64
salt and digest, so the cost parameters travel with each hash.
"""

from base64 import b64decode, b64encode
from binascii import Error as Base64Error
from hashlib import scrypt
from hmac import compare_digest
from os import urandom
from typing import Optional, Tuple

from config import config
from errors import UsernameNotFound

SCHEME = "scrypt"
SALT_BYTES = 16
DIGEST_BYTES = 32
BLOCK_SIZE = 8
PARALLELISM = 1


def hash_password(password: str, n: Optional[int] = None) -> str:
    cost = n or config.PASSWORD_HASH_N
    salt = urandom(SALT_BYTES)
    digest = scrypt(
        password.encode("utf-8"),
        salt=salt,
        n=cost,
        r=BLOCK_SIZE,
        p=PARALLELISM,
        dklen=DIGEST_BYTES,
    )
    return "$".join([
        SCHEME,
        str(cost),
        str(BLOCK_SIZE),
        str(PARALLELISM),
        b64encode(salt).decode("ascii"),
        b64encode(digest).decode("ascii"),
    ])


def verify_password(password: str, stored_hash: str) -> bool:
    """Check ``password`` against a hash produced by :func:`hash_password`.

    Malformed hashes never verify.
    """
    try:
        scheme, n, r, p, salt_b64, digest_b64 = stored_hash.split("$")
        if scheme != SCHEME:
            return False
        salt = b64decode(salt_b64)
        expected = b64decode(digest_b64)
        candidate = scrypt(
            password.encode("utf-8"),
            salt=salt,
            n=int(n),
            r=int(r),
            p=int(p),
            dklen=len(expected),
        )
    except (ValueError, Base64Error):
        return False
    return compare_digest(candidate, expected)


def parse_basic_auth(header: Optional[str]) -> Tuple[str, str]:
    """Split an ``Authorization: Basic ...`` header into username and password.

    Raises:
        UsernameNotFound: if the header is missing, not Basic, or malformed.
    """
    if not header:
        raise UsernameNotFound()

    kind, _, payload = header.strip().partition(" ")
    if kind.lower() != "basic" or not payload:
        raise UsernameNotFound()

    payload = payload.strip()
    # Some clients omit the trailing padding
    payload += "=" * (-len(payload) % 4)
    try:
        decoded = b64decode(payload, validate=True).decode("utf-8")
    except (Base64Error, UnicodeDecodeError):
        raise UsernameNotFound()

    username, sep, password = decoded.partition(":")
    if not sep or not username:
        raise UsernameNotFound()
    return username, password
