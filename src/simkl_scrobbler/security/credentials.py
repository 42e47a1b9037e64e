"""
Credential provider for the per-user tokens embedded in addon URLs.

Format (stable; existing install URLs depend on it):
    base64url( "<iv hex>:<ciphertext hex>" )
with AES-192-CBC, PKCS7 padding and a 24-byte key derived from ENCRYPTION_KEY
(utf-8 bytes, zero-padded or truncated).
"""

from __future__ import annotations

import base64
import binascii
import os

from simkl_scrobbler.config import get_settings
from simkl_scrobbler.errors import ConfigurationError, DecryptionError

KEY_BYTES = 24
IV_BYTES = 16


def _primitives():
    try:
        from cryptography.hazmat.primitives import padding  # type: ignore
        from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes  # type: ignore
    except Exception as ex:  # pragma: no cover
        raise RuntimeError("cryptography is required for token encryption") from ex
    return Cipher, algorithms, modes, padding


def _key_bytes(key: str | None = None) -> bytes:
    raw = key
    if raw is None:
        sec = get_settings().secret.encryption_key
        raw = sec.get_secret_value() if sec is not None else ""
    if not raw:
        raise ConfigurationError("ENCRYPTION_KEY is required")
    return raw.encode("utf-8")[:KEY_BYTES].ljust(KEY_BYTES, b"\0")


def _b64url_decode(data: str) -> bytes:
    s = str(data or "").strip()
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def encrypt_token(text: str, *, key: str | None = None) -> str:
    Cipher, algorithms, modes, padding = _primitives()
    iv = os.urandom(IV_BYTES)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    data = padder.update(str(text).encode("utf-8")) + padder.finalize()
    enc = Cipher(algorithms.AES(_key_bytes(key)), modes.CBC(iv)).encryptor()
    ct = enc.update(data) + enc.finalize()
    combined = f"{iv.hex()}:{ct.hex()}"
    return base64.urlsafe_b64encode(combined.encode("ascii")).decode("ascii").rstrip("=")


def decrypt_token(stored: str, *, key: str | None = None) -> str:
    """
    Return the bearer credential for a stored token.

    Raises DecryptionError for malformed input or a wrong key, ConfigurationError
    when no key is configured.
    """
    Cipher, algorithms, modes, padding = _primitives()
    try:
        combined = _b64url_decode(stored).decode("utf-8")
        iv_hex, _, ct_hex = combined.partition(":")
        if not iv_hex or not ct_hex:
            raise DecryptionError("invalid encrypted token format")
        iv = bytes.fromhex(iv_hex)
        ct = bytes.fromhex(ct_hex)
    except (binascii.Error, UnicodeDecodeError, ValueError) as ex:
        raise DecryptionError("invalid encrypted token format") from ex
    if len(iv) != IV_BYTES or not ct or len(ct) % IV_BYTES:
        raise DecryptionError("invalid encrypted token format")

    dec = Cipher(algorithms.AES(_key_bytes(key)), modes.CBC(iv)).decryptor()
    padded = dec.update(ct) + dec.finalize()
    try:
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as ex:
        raise DecryptionError("token could not be decrypted") from ex


def decode_secondary_token(stored: str) -> str:
    """AniList tokens travel base64-encoded in the addon config."""
    try:
        out = base64.b64decode(str(stored or "").strip(), validate=False).decode("utf-8").strip()
    except (binascii.Error, UnicodeDecodeError) as ex:
        raise DecryptionError("invalid secondary token encoding") from ex
    if not out:
        raise DecryptionError("empty secondary token")
    return out
