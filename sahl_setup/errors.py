"""
Exception hierarchy for provisioning runs.

Every provider failure ends up as one of these, so the CLI boundary can
decide between re-prompting, retrying, falling back and exiting.
"""

from typing import Optional


class SahlSetupError(Exception):
    """Base class for all provisioning errors."""


class PrerequisiteError(SahlSetupError):
    """Missing SDK credentials, expired login or missing tooling."""

    def __init__(self, message: str, remediation: str = ""):
        self.remediation = remediation
        super().__init__(message)


class InputValidationError(SahlSetupError):
    """A user-supplied value (account id, region, subscription) is malformed."""

    def __init__(self, field: str, value: str, message: str, example: str = ""):
        self.field = field
        self.value = value
        self.example = example
        super().__init__(message)


class ProvisioningError(SahlSetupError):
    """A provider call failed in a way that cannot be recovered."""

    def __init__(self, step: str, message: str, cause: Optional[BaseException] = None):
        self.step = step
        self.cause = cause
        super().__init__(f"{step}: {message}")


class TransientProviderError(SahlSetupError):
    """Provider-side eventual consistency; worth retrying after a short sleep."""


class ConsentError(SahlSetupError):
    """An admin-consent strategy could not complete."""
