"""
Identity token verification for sign-in.

The identity provider issues signed JWTs; a verifier turns a bearer token into
an AccountProfile or raises InvalidIdentityTokenError. Nothing downstream sees
the raw token.
"""

import logging
from typing import Optional

import jwt

from . import config
from .errors import InvalidIdentityTokenError
from .models import AccountProfile

logger = logging.getLogger(__name__)


class IdentityVerifier:
    """Verifies an identity token and returns the account it belongs to."""

    def verify(self, token: str) -> AccountProfile:
        raise NotImplementedError


class JwtIdentityVerifier(IdentityVerifier):
    """
    Verifies provider-signed JWTs.

    Claims used:
    - sub: account id (required)
    - email, name: profile fields (optional)
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = config.IDENTITY_JWT_ALGORITHM,
        audience: Optional[str] = config.IDENTITY_JWT_AUDIENCE,
        issuer: Optional[str] = config.IDENTITY_JWT_ISSUER,
    ) -> None:
        if not secret:
            raise ValueError("secret is required")
        self._secret = secret
        self._algorithm = algorithm
        self._audience = audience
        self._issuer = issuer

    def verify(self, token: str) -> AccountProfile:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise InvalidIdentityTokenError("Identity token has expired")
        except jwt.InvalidTokenError as e:
            logger.warning("Rejected identity token", extra={"error": str(e)})
            raise InvalidIdentityTokenError(f"Invalid identity token: {str(e)}")

        try:
            return AccountProfile(
                account_id=str(claims["sub"]),
                email=str(claims.get("email") or ""),
                display_name=str(claims.get("name") or ""),
            )
        except ValueError:
            raise InvalidIdentityTokenError("Identity token has an empty subject")


def build_verifier_from_env() -> Optional[IdentityVerifier]:
    if not config.IDENTITY_JWT_SECRET:
        return None
    return JwtIdentityVerifier(config.IDENTITY_JWT_SECRET)
