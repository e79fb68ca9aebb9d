from .errors import ErrorKind, SiweError
from .message import SiweMessage
from .nonce import generate_nonce
from .verifier import ContractSignatureVerifier, SignatureVerifier, VerificationResult

__all__ = [
    "ContractSignatureVerifier",
    "ErrorKind",
    "SignatureVerifier",
    "SiweError",
    "SiweMessage",
    "VerificationResult",
    "generate_nonce",
]
