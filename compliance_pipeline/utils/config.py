"""Application Configuration"""

from pydantic import field_validator
from pydantic_settings import BaseSettings
from typing import List, Optional
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings"""

    APP_NAME: str = "Compliance Audit Pipeline"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]
    MAX_REQUEST_SIZE: int = 10 * 1024 * 1024  # bytes

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Storage
    AUDIT_STORE: str = "memory"  # memory, redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Encryption / signing. Missing keys degrade to plaintext / unsigned mode.
    ENCRYPTION_KEY: Optional[str] = None  # hex, 32 bytes
    SIGNING_KEY: Optional[str] = None  # hex, 64 bytes
    SIGNING_DISABLED: bool = False

    # Compliance
    HIPAA_COMPLIANT: bool = True
    DETECT_PII: bool = True

    # Audit
    AUDIT_RETENTION_DAYS: int = 2555  # 7 years
    AUDIT_BATCH_SIZE: int = 100
    AUDIT_FLUSH_INTERVAL_SECONDS: float = 5.0
    AUDIT_MAX_BUFFER_SIZE: int = 10000

    # Export
    EXPORT_DIR: str = "./exports"
    EXPORT_MAX_RECORDS: int = 10000

    class Config:
        env_file = ".env"

    @field_validator("ENCRYPTION_KEY")
    @classmethod
    def _check_encryption_key(cls, value: Optional[str]) -> Optional[str]:
        return _check_hex_key(value, 32, "ENCRYPTION_KEY")

    @field_validator("SIGNING_KEY")
    @classmethod
    def _check_signing_key(cls, value: Optional[str]) -> Optional[str]:
        return _check_hex_key(value, 64, "SIGNING_KEY")

    @field_validator("AUDIT_STORE")
    @classmethod
    def _check_store(cls, value: str) -> str:
        if value not in ("memory", "redis"):
            raise ValueError("AUDIT_STORE must be 'memory' or 'redis'")
        return value

    @property
    def encryption_key_bytes(self) -> Optional[bytes]:
        return bytes.fromhex(self.ENCRYPTION_KEY) if self.ENCRYPTION_KEY else None

    @property
    def signing_key_bytes(self) -> Optional[bytes]:
        return bytes.fromhex(self.SIGNING_KEY) if self.SIGNING_KEY else None


def _check_hex_key(value: Optional[str], length: int, name: str) -> Optional[str]:
    if value is None or value == "":
        return None
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raise ValueError(f"{name} must be hex encoded")
    if len(raw) != length:
        raise ValueError(f"{name} must decode to {length} bytes")
    return value


@lru_cache()
def get_settings() -> Settings:
    return Settings()
