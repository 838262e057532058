from __future__ import annotations


class StsAccessError(Exception):
    """Base error for the provisioning subsystem."""


class ValidationError(StsAccessError):
    """Input failed validation before any state was written."""


class ProviderConfigError(StsAccessError):
    """Missing or invalid provider configuration."""


class CredentialEncryptionError(StsAccessError):
    """Credential secrets cannot be encrypted or decrypted."""


class NotFoundError(StsAccessError):
    """Referenced record does not exist."""


class InvalidTaskStateError(StsAccessError):
    """Manual task is not in a state that allows the requested action."""


class ProvisioningStateConflictError(StsAccessError):
    """Concurrent writers kept changing the provisioning state row."""


class QueueUnavailableError(StsAccessError):
    """Provisioning queue could not accept the job."""
