"""Tests for Fernet secret encryption and key rotation."""

import pytest
from cryptography.fernet import Fernet

from agentu.core.exceptions import SecretEncryptionError
from agentu.core.secret_encryption import SecretEncryptionService, key_prefix


class TestSecretEncryptionService:
    def test_round_trip(self, test_settings):
        service = SecretEncryptionService(test_settings)
        encrypted = service.encrypt("sk-live-123456")
        assert encrypted != "sk-live-123456"
        assert service.decrypt(encrypted) == "sk-live-123456"

    def test_missing_key_is_rejected(self, settings_factory):
        with pytest.raises(SecretEncryptionError):
            SecretEncryptionService(settings_factory(secret_encryption_key=None))

    def test_malformed_key_is_rejected(self, settings_factory):
        with pytest.raises(SecretEncryptionError):
            SecretEncryptionService(settings_factory(secret_encryption_key="not-a-fernet-key"))

    def test_wrong_key_cannot_decrypt(self, settings_factory):
        encrypted = SecretEncryptionService(settings_factory()).encrypt("secret")
        other = SecretEncryptionService(settings_factory(secret_encryption_key=Fernet.generate_key().decode()))
        with pytest.raises(SecretEncryptionError):
            other.decrypt(encrypted)

    def test_empty_values_are_rejected(self, test_settings):
        service = SecretEncryptionService(test_settings)
        with pytest.raises(SecretEncryptionError):
            service.encrypt("")
        with pytest.raises(SecretEncryptionError):
            service.decrypt("")

    def test_rotation_with_fallback_key(self, settings_factory):
        old_key = Fernet.generate_key().decode()
        new_key = Fernet.generate_key().decode()
        encrypted_old = SecretEncryptionService(settings_factory(secret_encryption_key=old_key)).encrypt("secret")

        rotating = SecretEncryptionService(
            settings_factory(secret_encryption_key=new_key, secret_encryption_key_fallback=old_key)
        )
        assert rotating.decrypt(encrypted_old) == "secret"

        rotated = rotating.rotate(encrypted_old)
        new_only = SecretEncryptionService(settings_factory(secret_encryption_key=new_key))
        assert new_only.decrypt(rotated) == "secret"


def test_key_prefix_hides_most_of_the_secret():
    assert key_prefix("sk-abcdefghijkl") == "sk-abcde..."
    assert key_prefix("short") == "sh..."
