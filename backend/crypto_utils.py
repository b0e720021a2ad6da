"""Application-level encryption for Mautic credentials (AES-256-CBC, scrypt-derived key).

Usage:
    from crypto_utils import encrypt_value, decrypt_value

    # Encrypt before INSERT/UPDATE
    encrypted = encrypt_value(plaintext_token)

    # Decrypt inside the API gateway only
    plaintext = decrypt_value(encrypted_token)

Envelope format is "<hex iv>:<hex ciphertext>" with a fresh 16-byte IV per call,
so encrypting the same secret twice never yields the same envelope.

Requires ENCRYPTION_KEY env var (any passphrase; the AES key is derived from it with scrypt).
"""
import os
import logging
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

import config

logger = logging.getLogger(__name__)

KEY_SALT = b'salt'
KEY_LENGTH = 32
IV_LENGTH = 16
ENVELOPE_SEPARATOR = ':'

# Development-only fallback, never accepted in production
DEV_PASSPHRASE = 'default-key-change-in-production!!'


class CodecError(Exception):
    """Raised when a ciphertext envelope cannot be decrypted."""
    pass


def derive_key(passphrase: str) -> bytes:
    """Derive the 256-bit AES key from a passphrase (scrypt, N=2^14, r=8, p=1, fixed salt)."""
    kdf = Scrypt(salt=KEY_SALT, length=KEY_LENGTH, n=2 ** 14, r=8, p=1)
    return kdf.derive(passphrase.encode('utf-8'))


class CredentialCodec:
    """Symmetric encrypt/decrypt of secrets at rest. None passes through untouched."""

    def __init__(self, passphrase: str):
        if not passphrase:
            raise ValueError("Encryption passphrase must not be empty")
        self._key = derive_key(passphrase)

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if plaintext is None:
            return None

        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode('utf-8')) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return iv.hex() + ENVELOPE_SEPARATOR + ciphertext.hex()

    def decrypt(self, envelope: Optional[str]) -> Optional[str]:
        if envelope is None:
            return None

        iv_hex, sep, ciphertext_hex = envelope.partition(ENVELOPE_SEPARATOR)
        if not sep:
            raise CodecError("Malformed ciphertext envelope: missing IV separator")

        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError as e:
            raise CodecError(f"Malformed ciphertext envelope: {e}") from e

        if len(iv) != IV_LENGTH:
            raise CodecError(f"Malformed ciphertext envelope: IV must be {IV_LENGTH} bytes")
        if not ciphertext or len(ciphertext) % IV_LENGTH:
            raise CodecError("Malformed ciphertext envelope: bad ciphertext length")

        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode('utf-8')
        except (ValueError, UnicodeDecodeError) as e:
            # Bad padding / undecodable bytes: wrong key or corrupted envelope
            raise CodecError("Failed to decrypt value (wrong key or corrupted data)") from e


_codec: Optional[CredentialCodec] = None


def configure_codec(passphrase: str) -> CredentialCodec:
    """Install the process-wide codec. Called once by the composition root (and by tests)."""
    global _codec
    _codec = CredentialCodec(passphrase)
    return _codec


def get_codec() -> CredentialCodec:
    """Return the process-wide codec, building it from ENCRYPTION_KEY on first use."""
    global _codec
    if _codec is None:
        passphrase = config.ENCRYPTION_KEY
        if not passphrase:
            if config.IS_PRODUCTION:
                raise RuntimeError(
                    "ENCRYPTION_KEY is required in production. Credentials cannot be stored "
                    "with the development fallback key."
                )
            logger.warning("ENCRYPTION_KEY not set, using development fallback key")
            passphrase = DEV_PASSPHRASE
        _codec = CredentialCodec(passphrase)
        logger.info("Encryption key loaded successfully")
    return _codec


def encrypt_value(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a plaintext string with the process-wide codec. None stays None."""
    return get_codec().encrypt(plaintext)


def decrypt_value(envelope: Optional[str]) -> Optional[str]:
    """Decrypt an envelope with the process-wide codec. None stays None; garbage raises CodecError."""
    return get_codec().decrypt(envelope)
