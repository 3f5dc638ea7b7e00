"""Pipeline exceptions

Compliance violations are business outcomes and are returned as results,
never raised. Everything here is a system failure.
"""


class PipelineError(Exception):
    """Base class for compliance pipeline failures"""


class RegistryFrozenError(PipelineError):
    """Raised when a rule is added to a frozen registry"""


class EncryptionError(PipelineError):
    """Key derivation or cipher operation failed"""


class DecryptionError(EncryptionError):
    """Ciphertext could not be authenticated or decoded"""


class SigningKeyMissingError(PipelineError):
    """Signing was requested but no signing key is configured"""


class SignatureVerificationError(PipelineError):
    """HMAC signature mismatch; the payload must be treated as untrusted"""


class StorageError(PipelineError):
    """Audit storage I/O failed; the operation may be retried"""


class ChainConflictError(StorageError):
    """A batch does not link to the last stored integrity hash"""


class AuditBufferFullError(StorageError):
    """The audit buffer is full and could not be flushed"""


class ExportError(PipelineError):
    """Audit export generation failed; no file was produced"""
