"""
Provider credential decryption.

Stored credentials are AES-256-GCM ciphertexts serialized as a colon-delimited
hex triplet ``iv:tag:ciphertext`` (12-byte IV, 16-byte tag). Values that are
not in that format are treated as plaintext so providers configured before
encryption was enabled keep working.
"""

import logging
import os
import re
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .exceptions import CredentialError
from .interfaces import CredentialDecryptor

logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16

_CIPHERTEXT_PATTERN = re.compile(r'^([0-9a-fA-F]{24}):([0-9a-fA-F]{32}):([0-9a-fA-F]*)$')


def is_encrypted(value: Optional[str]) -> bool:
    return bool(value) and _CIPHERTEXT_PATTERN.match(value) is not None


class AesGcmDecryptor(CredentialDecryptor):
    """Decrypts (and, for administrative tooling, encrypts) provider credentials"""

    def __init__(self, hex_key: Optional[str] = None):
        self._key = bytes.fromhex(hex_key) if hex_key else None
        if self._key is not None and len(self._key) != 32:
            raise CredentialError("Encryption key must be 32 bytes (64 hex characters)")

    def decrypt(self, value: str) -> str:
        if not value:
            return ""
        match = _CIPHERTEXT_PATTERN.match(value)
        if match is None:
            return value
        if self._key is None:
            raise CredentialError("Credential is encrypted but no ENCRYPTION_KEY is configured")

        iv, tag, ciphertext = (bytes.fromhex(part) for part in match.groups())
        decryptor = Cipher(algorithms.AES(self._key), modes.GCM(iv, tag)).decryptor()
        try:
            plaintext = decryptor.update(ciphertext) + decryptor.finalize()
        except InvalidTag as e:
            raise CredentialError("Credential failed authentication (wrong key or tampered value)") from e
        return plaintext.decode('utf-8')

    def encrypt(self, plaintext: str) -> str:
        if self._key is None:
            raise CredentialError("Cannot encrypt without an ENCRYPTION_KEY")
        iv = os.urandom(IV_LENGTH)
        encryptor = Cipher(algorithms.AES(self._key), modes.GCM(iv)).encryptor()
        ciphertext = encryptor.update(plaintext.encode('utf-8')) + encryptor.finalize()
        return f"{iv.hex()}:{encryptor.tag.hex()}:{ciphertext.hex()}"
