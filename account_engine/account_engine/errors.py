"""Error taxonomy shared by the account engine services.

Validation errors are raised synchronously and never retried.  Conflict
errors are normally recovered inside the service that detects them.
Store unavailability is surfaced with ``retryable = True`` so the calling
network layer can retry the whole operation; every public operation is
safe to repeat.
"""

from __future__ import annotations


class AccountEngineError(Exception):
    """Base class for all account engine failures."""

    retryable: bool = False


class IdentityValidationError(AccountEngineError):
    """The external identity cannot be mapped to an addressable principal."""


class PrincipalNotFoundError(AccountEngineError):
    """No principal exists with the requested identifier."""

    def __init__(self, principal_id: str) -> None:
        super().__init__(f"Principal not found: {principal_id}")
        self.principal_id = principal_id


class CredentialNotFoundError(AccountEngineError):
    """The principal has no active credential."""

    def __init__(self, principal_id: str) -> None:
        super().__init__(f"No active credential for principal {principal_id}")
        self.principal_id = principal_id


class ActiveCredentialExistsError(AccountEngineError):
    """An active credential already exists; deactivate or regenerate first."""

    def __init__(self, principal_id: str) -> None:
        super().__init__(f"Principal {principal_id} already has an active credential")
        self.principal_id = principal_id


class SecretNotRetrievableError(AccountEngineError):
    """The raw secret was never stored in reversible form or cannot be recovered.

    Callers should prompt for manual re-entry or regeneration.
    """

    def __init__(self, principal_id: str, reason: str) -> None:
        super().__init__(f"Secret for principal {principal_id} is not retrievable: {reason}")
        self.principal_id = principal_id
        self.reason = reason


class StoreUnavailableError(AccountEngineError):
    """The backing store could not be reached; the operation may be retried."""

    retryable = True
