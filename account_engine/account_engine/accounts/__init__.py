"""Principal provisioning from external identities."""

from account_engine.accounts.identity import ExternalIdentity
from account_engine.accounts.provisioner import AccountProvisioner, BootstrapResult, PrincipalRecord

__all__ = ["AccountProvisioner", "BootstrapResult", "ExternalIdentity", "PrincipalRecord"]
