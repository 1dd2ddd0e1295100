"""
Broker Console - Authentication Module
========================================
Stateless session authentication for the management API.

Security model:
- Operators are ledger users with is_admin=True and disallowed=False
- Login issues a pair of HS256 JWTs carrying {username, exp}:
    access token  - short-lived (15 minutes by default)
    refresh token - long-lived (7 days by default)
- Tokens are verified from their signature and expiry alone; there is no
  server-side session table and no revocation list
- All /api/v1 routes except login, refresh and install require a valid
  access token in the Authorization: Bearer header

Refresh flow:
    1. Client POSTs its refresh token to /api/v1/refresh
    2. Token is validated exactly like an access token
    3. A brand new pair is issued for the same username
    The old refresh token keeps working until its own expiry.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, NamedTuple

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from console.errors import AuthenticationError, AuthorizationError, InternalError
from console.ledger import Credential, CredentialLedger, hash_password


logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_TTL = timedelta(days=7)

# Security scheme for FastAPI dependency injection
security = HTTPBearer(auto_error=False)


class InvalidToken(AuthenticationError):
    """Token is malformed or its signature does not match."""


class ExpiredToken(AuthenticationError):
    """Token is well-formed and signed, but past its expiry."""


class AuthenticationFailed(AuthenticationError):
    """Username/password pair did not match an enabled user."""


class InsufficientPrivilege(AuthorizationError):
    """Credentials matched, but the user is not an administrator."""


class SessionClaims(NamedTuple):
    username: str
    expires_at: datetime


class TokenPair(NamedTuple):
    access_token: str
    refresh_token: str


class TokenService:
    """
    Issues and validates session tokens.

    Attributes:
        ledger:      Credential store consulted by login().
        access_ttl:  Lifetime of access tokens.
        refresh_ttl: Lifetime of refresh tokens.
    """

    def __init__(
        self,
        secret: str,
        ledger: CredentialLedger,
        access_ttl: timedelta = ACCESS_TOKEN_TTL,
        refresh_ttl: timedelta = REFRESH_TOKEN_TTL,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize the token service.

        Args:
            secret:      Symmetric signing key. Must not be empty.
            ledger:      Credential ledger used for login.
            access_ttl:  Access token lifetime.
            refresh_ttl: Refresh token lifetime.
            clock:       Returns the current UTC time (overridable in tests).
        """
        if not secret:
            raise ValueError("signing secret required")
        self._key = secret
        self.ledger = ledger
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._now = clock or (lambda: datetime.now(timezone.utc))
        self._decoy_credential: Credential | None = None

    def generate_token_pair(self, username: str) -> TokenPair:
        """
        Build a fresh access/refresh pair for a user.

        Raises:
            InternalError: If the signing library fails.
        """
        now = self._now()
        try:
            access = self._sign(username, now + self.access_ttl)
            refresh = self._sign(username, now + self.refresh_ttl)
        except JWTError as e:
            logger.error("failed to sign tokens for %s: %s", username, e)
            raise InternalError("failed to generate tokens") from e
        return TokenPair(access, refresh)

    def validate_token(self, token: str) -> SessionClaims:
        """
        Check a token's signature, then its expiry.

        Returns:
            The claims embedded in the token.

        Raises:
            InvalidToken: Malformed token, bad signature or missing claims.
            ExpiredToken: Correctly signed token whose expiry has passed.
        """
        try:
            payload = jwt.decode(token, self._key, algorithms=[JWT_ALGORITHM])
        except ExpiredSignatureError as e:
            raise ExpiredToken("token expired") from e
        except JWTError as e:
            raise InvalidToken("invalid token") from e

        username = payload.get("username")
        exp = payload.get("exp")
        if not isinstance(username, str) or not username or not isinstance(exp, (int, float)):
            raise InvalidToken("invalid token")
        return SessionClaims(username, datetime.fromtimestamp(exp, tz=timezone.utc))

    def login(self, username: str, password: str) -> TokenPair:
        """
        Authenticate an operator against the ledger.

        Raises:
            InsufficientPrivilege: Credentials match an enabled non-admin user.
            AuthenticationFailed:  Anything else that is not a valid admin.
        """
        matched = False
        for user in self.ledger.get_users():
            if user.username != username:
                continue
            matched = True
            if not user.check_password(password) or user.disallowed:
                continue
            if not user.is_admin:
                logger.info("login refused for non-admin user %s", username)
                raise InsufficientPrivilege("insufficient privileges")
            logger.info("login: %s", username)
            return self.generate_token_pair(username)

        if not matched:
            # Unknown usernames pay the same bcrypt cost as a wrong password
            self._decoy().check_password(password)
        logger.info("failed login attempt for %r", username)
        raise AuthenticationFailed("invalid credentials")

    def refresh(self, refresh_token: str) -> TokenPair:
        """Validate a refresh token and issue a new pair for its user."""
        try:
            claims = self.validate_token(refresh_token)
        except ExpiredToken as e:
            raise ExpiredToken("refresh token expired") from e
        except InvalidToken as e:
            raise InvalidToken("invalid refresh token") from e
        return self.generate_token_pair(claims.username)

    # -- Internal helpers ------------------------------------------------------

    def _decoy(self) -> Credential:
        if self._decoy_credential is None:
            self._decoy_credential = Credential(
                username="",
                secret=hash_password(secrets.token_urlsafe(16)),
            )
        return self._decoy_credential

    def _sign(self, username: str, expires_at: datetime) -> str:
        payload = {"username": username, "exp": expires_at}
        return jwt.encode(payload, self._key, algorithm=JWT_ALGORITHM)


def require_auth(token_service: TokenService):
    """
    Create a FastAPI dependency that enforces authentication.

    Usage in routes:
        @router.get("/listeners", dependencies=[Depends(require_auth(tokens))])
        async def list_listeners(): ...

    Args:
        token_service: The TokenService used for token verification.

    Returns:
        A FastAPI dependency function yielding the session claims.
    """
    async def _verify(
        credentials: HTTPAuthorizationCredentials | None = Depends(security),
    ) -> SessionClaims:
        if credentials is None:
            raise AuthenticationError("authorization header required")
        return token_service.validate_token(credentials.credentials)

    return _verify
