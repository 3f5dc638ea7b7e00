"""Tests for application settings"""

import pytest
from pydantic import ValidationError

from compliance_pipeline.utils.config import Settings


class TestSettings:

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.AUDIT_STORE in ("memory", "redis")
        assert settings.AUDIT_RETENTION_DAYS == 2555
        assert settings.HIPAA_COMPLIANT

    def test_missing_keys_are_none(self):
        settings = Settings(_env_file=None, ENCRYPTION_KEY="", SIGNING_KEY="")

        assert settings.encryption_key_bytes is None
        assert settings.signing_key_bytes is None

    def test_hex_keys_decode(self):
        settings = Settings(_env_file=None, ENCRYPTION_KEY="ab" * 32, SIGNING_KEY="cd" * 64)

        assert settings.encryption_key_bytes == bytes([0xAB]) * 32
        assert len(settings.signing_key_bytes) == 64

    @pytest.mark.parametrize("key", ["zz" * 32, "ab" * 16])
    def test_invalid_encryption_key(self, key):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, ENCRYPTION_KEY=key)

    def test_invalid_signing_key_length(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, SIGNING_KEY="ab" * 32)

    def test_unknown_store(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, AUDIT_STORE="postgres")

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("AUDIT_BATCH_SIZE", "7")
        monkeypatch.setenv("DETECT_PII", "false")

        settings = Settings(_env_file=None)

        assert settings.AUDIT_BATCH_SIZE == 7
        assert not settings.DETECT_PII
