"""
Credential service: one-way lobby passwords

Stored format: scrypt$<salt hex>$<derived key hex>
A fresh 16-byte salt per credential; verification goes through the KDF's
own constant-time comparison.
"""
from os import urandom

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1
KEY_LEN = 64
SALT_LEN = 16
SCHEME = "scrypt"


def _kdf(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=KEY_LEN, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)


def hash_password(plain: str) -> str:
    salt = urandom(SALT_LEN)
    key = _kdf(salt).derive(plain.encode("utf-8"))
    return f"{SCHEME}${salt.hex()}${key.hex()}"


def verify_password(plain: str, stored: str) -> bool:
    """
    Check a candidate password against a stored credential

    Returns False for a missing password or a malformed credential
    instead of raising.
    """
    if not plain or not stored:
        return False
    try:
        scheme, salt_hex, key_hex = stored.split("$")
        if scheme != SCHEME:
            return False
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(key_hex)
    except ValueError:
        return False
    try:
        _kdf(salt).verify(plain.encode("utf-8"), expected)
    except InvalidKey:
        return False
    return True
