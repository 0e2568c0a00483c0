# flowerscan/credential/__init__.py
from .codec import CredentialPayload, MAX_CREDENTIAL_LENGTH
from .signer import TokenSigner
from .service import (
    CredentialService, Verification, MALFORMED, INVALID, EXPIRED
)

__all__ = [
    "CredentialPayload", "CredentialService", "TokenSigner", "Verification",
    "MALFORMED", "INVALID", "EXPIRED", "MAX_CREDENTIAL_LENGTH",
]
