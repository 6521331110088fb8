from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from jose import ExpiredSignatureError, JWTError, jwt
from starlette.requests import HTTPConnection

from boardroom.config.loader import get_auth_settings

# Set up a dedicated logger for authentication events
logger = logging.getLogger("auth_module")
logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

_MIN_SECRET_LENGTH = 32


class TokenVerificationError(Exception):
    """Raised when a bearer credential cannot be verified."""


@dataclass(frozen=True)
class VerifiedToken:
    subject: str
    session_id: Optional[str] = None
    claims: Optional[Dict[str, Any]] = None


class JWTTokenVerifier:
    """Verifies identity-provider JWTs and yields the subject and session id.

    The verifier only reads tokens; issuing them is the identity provider's job.
    """

    def __init__(
        self,
        key: str,
        *,
        algorithms: Iterable[str] = ("HS256",),
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        leeway_seconds: int = 0,
    ) -> None:
        if not key:
            raise ValueError("A verification key is required")
        self._key = key
        self.algorithms: List[str] = list(algorithms)
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    async def verify(self, token: str) -> VerifiedToken:
        options = {
            "verify_aud": self.audience is not None,
            "leeway": self.leeway_seconds,
        }
        try:
            claims = jwt.decode(
                token,
                self._key,
                algorithms=self.algorithms,
                issuer=self.issuer,
                audience=self.audience,
                options=options,
            )
        except ExpiredSignatureError as exc:
            raise TokenVerificationError("Token has expired") from exc
        except JWTError as exc:
            raise TokenVerificationError(f"Invalid token: {exc}") from exc

        subject = claims.get("sub")
        if not subject or not isinstance(subject, str):
            raise TokenVerificationError("Token has no subject")
        session_id = claims.get("sid")
        return VerifiedToken(
            subject=subject,
            session_id=str(session_id) if session_id else None,
            claims=claims,
        )


def _is_production_mode() -> bool:
    env = os.getenv("BOARDROOM_ENV", "development").strip().lower()
    return env in {"production", "prod"}


def _resolve_verification_key() -> str:
    key = os.getenv("BOARDROOM_JWT_SECRET_KEY")
    if not key:
        if _is_production_mode():
            raise RuntimeError(
                "Missing BOARDROOM_JWT_SECRET_KEY while BOARDROOM_ENV is set to production. "
                + "Configure the identity provider's signing key before startup."
            )
        logger.warning(
            "BOARDROOM_JWT_SECRET_KEY is not set; using a generated development key. "
            + "No externally issued token will verify until it is configured."
        )
        return secrets.token_urlsafe(48)
    if key.lstrip().startswith("-----BEGIN"):
        return key
    if len(key) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            "Invalid JWT secret key configuration. "
            + f"The key must be at least {_MIN_SECRET_LENGTH} characters long."
        )
    return key


def build_token_verifier() -> JWTTokenVerifier:
    """Build the verifier from BOARDROOM_JWT_SECRET_KEY and the auth config section."""
    settings = get_auth_settings()
    verifier = JWTTokenVerifier(
        _resolve_verification_key(),
        algorithms=settings["algorithms"],
        issuer=settings["issuer"],
        audience=settings["audience"],
        leeway_seconds=settings["leeway_seconds"],
    )
    logger.info(
        "Token verifier ready (algorithms=%s, issuer=%s)",
        ",".join(verifier.algorithms),
        verifier.issuer or "-",
    )
    return verifier


def extract_bearer_token(connection: HTTPConnection) -> Optional[str]:
    """
    Read the credential from the connection-time auth payload (`token` query
    parameter) first, then from an `Authorization: Bearer <token>` header.
    """
    token = connection.query_params.get("token")
    if token and token.strip():
        return token.strip()

    header = connection.headers.get("authorization")
    if header and header.startswith("Bearer "):
        candidate = header.split(" ", 1)[1].strip()
        return candidate or None
    return None
