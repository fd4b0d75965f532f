"""
Opaque token codec for hiding upstream URLs from clients.

Tokens are ``percent-encode(base64(IV || AES-256-CBC(PKCS#7(plaintext))))``.
There is no authentication tag: tokens only carry routing hints back to the
service that minted them, so a tampered token has to fail safely but is not
detected as tampering. Changing this would break tokens minted by existing
clients.
"""

import base64
import binascii
import logging
import os
from urllib.parse import quote, unquote

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from pydantic import ValidationError

from hlsproxy.exceptions import (
    DecryptionFailed,
    InvalidKeyLength,
    MalformedPayload,
    TruncatedToken,
)
from hlsproxy.models import TokenPayload

logger = logging.getLogger(__name__)

KEY_SIZE = 32
IV_SIZE = 16
BLOCK_SIZE_BITS = algorithms.AES.block_size


def check_key(key: bytes) -> None:
    """Raise InvalidKeyLength unless key is exactly 32 bytes."""
    if len(key) != KEY_SIZE:
        raise InvalidKeyLength(len(key))


def encode(plaintext: bytes, key: bytes) -> str:
    """
    Encrypt plaintext into a URL-safe opaque token.

    Args:
        plaintext: Bytes to protect
        key: 32-byte AES-256 key

    Returns:
        Percent-encoded base64 string of IV followed by ciphertext

    Raises:
        InvalidKeyLength: If key is not exactly 32 bytes
    """
    check_key(key)

    iv = os.urandom(IV_SIZE)
    padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    combined = base64.b64encode(iv + ciphertext).decode("ascii")
    return quote(combined, safe="")


def decode(token: str, key: bytes) -> bytes:
    """
    Decrypt an opaque token back into its plaintext.

    Raises:
        InvalidKeyLength: If key is not exactly 32 bytes
        TruncatedToken: If the token is too short to hold an IV
        DecryptionFailed: If the token is not base64, the ciphertext is
            corrupt, or the key is wrong
    """
    check_key(key)

    try:
        combined = base64.b64decode(unquote(token), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionFailed() from e

    if len(combined) < IV_SIZE:
        raise TruncatedToken()

    iv, ciphertext = combined[:IV_SIZE], combined[IV_SIZE:]
    if not ciphertext or len(ciphertext) % IV_SIZE:
        raise DecryptionFailed()

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionFailed() from e


def encode_payload(url: str, referer: str, key: bytes) -> str:
    """Serialize a {url, referer} payload and encode it into a token."""
    payload = TokenPayload(url=url, referer=referer or "")
    return encode(payload.model_dump_json().encode("utf-8"), key)


def decode_payload(token: str, key: bytes) -> TokenPayload:
    """
    Decode a token minted by encode_payload().

    Raises:
        MalformedPayload: If decryption succeeds but the payload is not a
            valid {url, referer} object
        (plus everything decode() raises)
    """
    plaintext = decode(token, key)
    try:
        return TokenPayload.model_validate_json(plaintext)
    except ValidationError as e:
        logger.warning(f"[TOKEN] Decrypted payload did not parse: {e.error_count()} error(s)")
        raise MalformedPayload() from e
