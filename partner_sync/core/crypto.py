"""
AES-256-CBC string encryption with an inline IV.

Wire format: Base64( IV[16] || AES-256-CBC(PKCS#7(plaintext)) ).
The same format is used for inbound webhook payloads and for secrets stored
encrypted in the environment.
"""
import base64
import binascii
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

KEY_SIZE = 32
IV_SIZE = 16
BLOCK_BITS = 128


class DecryptionError(ValueError):
    """Ciphertext, key or padding is malformed"""


def generate_key() -> str:
    """Return a new random AES-256 key as Base64"""
    return base64.b64encode(os.urandom(KEY_SIZE)).decode("ascii")


def _decode_key(key: str | bytes) -> bytes:
    if isinstance(key, bytes):
        raw = key
    else:
        try:
            raw = base64.b64decode(key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("key is not valid Base64") from e
    if len(raw) != KEY_SIZE:
        raise DecryptionError(f"key must be {KEY_SIZE} bytes, got {len(raw)}")
    return raw


def encrypt_bytes(data: bytes, key: str | bytes, iv: bytes | None = None) -> str:
    raw_key = _decode_key(key)
    iv = iv if iv is not None else os.urandom(IV_SIZE)
    if len(iv) != IV_SIZE:
        raise ValueError(f"IV must be {IV_SIZE} bytes")

    padder = padding.PKCS7(BLOCK_BITS).padder()
    padded = padder.update(data) + padder.finalize()

    encryptor = Cipher(algorithms.AES(raw_key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(iv + ciphertext).decode("ascii")


def decrypt_bytes(ciphertext: str, key: str | bytes) -> bytes:
    raw_key = _decode_key(key)
    try:
        blob = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError("ciphertext is not valid Base64") from e

    body = blob[IV_SIZE:]
    if len(blob) <= IV_SIZE or len(body) % IV_SIZE:
        raise DecryptionError("ciphertext has an invalid length")

    decryptor = Cipher(algorithms.AES(raw_key), modes.CBC(blob[:IV_SIZE])).decryptor()
    padded = decryptor.update(body) + decryptor.finalize()

    unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError("invalid padding") from e


def encrypt_string(plaintext: str, key: str | bytes) -> str:
    """Encrypt UTF-8 text, returning Base64(IV || ciphertext)"""
    return encrypt_bytes(plaintext.encode("utf-8"), key)


def decrypt_string(ciphertext: str, key: str | bytes) -> str:
    """Inverse of :func:`encrypt_string`. Raises DecryptionError on any format problem."""
    try:
        return decrypt_bytes(ciphertext, key).decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("plaintext is not valid UTF-8") from e


def is_encrypted(text: str | None) -> bool:
    """Heuristic: valid Base64 that is longer than one IV"""
    if not text:
        return False
    try:
        return len(base64.b64decode(text, validate=True)) > IV_SIZE
    except (binascii.Error, ValueError):
        return False


def decrypt_if_encrypted(text: str, key: str | bytes | None) -> str:
    """
    Decrypt ``text`` when it looks encrypted and a key is available.

    Plain values pass through unchanged, so configuration may hold either a
    clear secret or one encrypted with the master key.
    """
    if not key or not is_encrypted(text):
        return text
    try:
        return decrypt_string(text, key)
    except DecryptionError:
        return text
