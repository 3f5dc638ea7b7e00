"""Shared fixtures"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from compliance_pipeline.models.audit import AuditAction, AuditLogEntry, LogLevel
from compliance_pipeline.services.audit_service import AuditLogWriter
from compliance_pipeline.services.audit_store import InMemoryAuditStore
from compliance_pipeline.services.encryption_service import AuditSigner, FieldEncryptor

MASTER_KEY = bytes(range(32))
SIGNING_KEY = bytes(range(64))

# Low iteration count keeps key derivation fast in tests
TEST_ITERATIONS = 1000


@pytest.fixture
def store():
    return InMemoryAuditStore()


@pytest.fixture
def encryptor():
    return FieldEncryptor(MASTER_KEY, iterations=TEST_ITERATIONS)


@pytest.fixture
def signer():
    return AuditSigner(SIGNING_KEY)


@pytest.fixture
def writer(store, encryptor, signer):
    return AuditLogWriter(store, encryptor=encryptor, signer=signer)


@pytest.fixture
def plain_writer(store):
    """Writer without encryption or signing keys"""
    return AuditLogWriter(store)


@pytest.fixture
def entry_factory():
    def make(**overrides):
        now = datetime.now(timezone.utc)
        fields = {
            "id": str(uuid.uuid4()),
            "timestamp": now,
            "level": LogLevel.INFO,
            "event_type": "data_read",
            "action": AuditAction.READ,
            "message": "Record viewed",
            "resource_type": "patient_record",
            "resource_id": "patient-1",
            "user_id": "user-1",
            "data_hash": "0" * 64,
            "retention_days": 2555,
            "expires_at": now + timedelta(days=2555),
        }
        fields.update(overrides)
        return AuditLogEntry(**fields)

    return make
