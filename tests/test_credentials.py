"""
Test suite for provider credential decryption.
"""
import pytest

from provider_engine.credentials import AesGcmDecryptor, is_encrypted
from provider_engine.exceptions import CredentialError


class TestAesGcmDecryptor:

    def test_round_trip(self, test_secrets):
        decryptor = AesGcmDecryptor(test_secrets.ENCRYPTION_KEY)
        stored = decryptor.encrypt("sk-live-secret")

        assert is_encrypted(stored)
        assert "sk-live-secret" not in stored
        assert decryptor.decrypt(stored) == "sk-live-secret"

    def test_each_encryption_uses_a_fresh_iv(self, test_secrets):
        decryptor = AesGcmDecryptor(test_secrets.ENCRYPTION_KEY)
        assert decryptor.encrypt("same") != decryptor.encrypt("same")

    def test_plaintext_passes_through(self, test_secrets):
        """Providers configured before encryption was enabled keep working"""
        assert AesGcmDecryptor(test_secrets.ENCRYPTION_KEY).decrypt("plain-key") == "plain-key"
        assert AesGcmDecryptor().decrypt("plain-key") == "plain-key"
        assert AesGcmDecryptor().decrypt("") == ""

    def test_wrong_key_is_rejected(self, test_secrets):
        stored = AesGcmDecryptor(test_secrets.ENCRYPTION_KEY).encrypt("sk-live-secret")

        with pytest.raises(CredentialError):
            AesGcmDecryptor(test_secrets.WRONG_ENCRYPTION_KEY).decrypt(stored)

    def test_tampered_ciphertext_is_rejected(self, test_secrets):
        decryptor = AesGcmDecryptor(test_secrets.ENCRYPTION_KEY)
        iv, tag, ciphertext = decryptor.encrypt("sk-live-secret").split(":")
        flipped = format(int(ciphertext[:2], 16) ^ 0xFF, "02x") + ciphertext[2:]

        with pytest.raises(CredentialError):
            decryptor.decrypt(f"{iv}:{tag}:{flipped}")

    def test_encrypted_value_without_key(self, test_secrets):
        stored = AesGcmDecryptor(test_secrets.ENCRYPTION_KEY).encrypt("sk-live-secret")

        with pytest.raises(CredentialError):
            AesGcmDecryptor().decrypt(stored)

    def test_key_length_is_validated(self):
        with pytest.raises(CredentialError):
            AesGcmDecryptor("00112233")

    def test_encrypt_requires_key(self):
        with pytest.raises(CredentialError):
            AesGcmDecryptor().encrypt("value")


class TestIsEncrypted:

    @pytest.mark.parametrize("value,expected", [
        ("a" * 24 + ":" + "b" * 32 + ":" + "cafe", True),
        ("A" * 24 + ":" + "B" * 32 + ":", True),
        ("a" * 23 + ":" + "b" * 32 + ":cafe", False),
        ("plain-api-key", False),
        ("", False),
        (None, False),
    ])
    def test_format_detection(self, value, expected):
        assert is_encrypted(value) is expected
