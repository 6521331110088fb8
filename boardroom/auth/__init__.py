from .tokens import (
    JWTTokenVerifier,
    TokenVerificationError,
    VerifiedToken,
    build_token_verifier,
    extract_bearer_token,
)

__all__ = [
    "JWTTokenVerifier",
    "TokenVerificationError",
    "VerifiedToken",
    "build_token_verifier",
    "extract_bearer_token",
]
