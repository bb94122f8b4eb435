"""
Auth gate for the Realtime Service.

Verifies HS256 bearer tokens against the process-wide signing secret. The
secret is obtained through an awaitable provider so it can come from a
remote secret store. There is no revocation list: a token with a valid
signature that has not expired is accepted.
"""

import inspect
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import jwt

from shared.logging import get_logger
from shared.errors import InvalidCredential
from shared.metrics import MetricsCollector


SecretProvider = Callable[[], Union[str, Awaitable[str]]]


@dataclass(frozen=True)
class Identity:
    """Decoded credential."""
    user_id: str
    username: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "username": self.username}


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


class AuthGate:
    """Verifies credentials and extracts identities."""

    def __init__(
        self,
        secret: Union[str, SecretProvider],
        algorithm: str = "HS256",
        leeway: float = 0,
        metrics: Optional[MetricsCollector] = None
    ):
        self._secret = secret
        self.algorithm = algorithm
        self.leeway = leeway
        self.metrics = metrics
        self.logger = get_logger("realtime.auth.gate")

    async def _get_secret(self) -> str:
        if not callable(self._secret):
            return self._secret
        secret = self._secret()
        if inspect.isawaitable(secret):
            secret = await secret
        return secret

    async def verify(self, credential: Any) -> Identity:
        """Verify a credential and return its identity.

        Raises InvalidCredential when the token is missing, malformed,
        badly signed, expired, or lacks a user id.
        """
        if not isinstance(credential, str) or not credential.strip():
            self._record("invalid")
            raise InvalidCredential("Token required")

        token = credential.strip()
        if token.startswith("Bearer "):
            token = token[7:]

        secret = await self._get_secret()

        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                leeway=self.leeway,
                options={"require": ["iat"]}
            )
        except jwt.ExpiredSignatureError:
            self._record("expired")
            raise InvalidCredential("Token has expired")
        except jwt.InvalidTokenError as e:
            self._record("invalid")
            raise InvalidCredential("Invalid token", details={"reason": str(e)})

        user_id = claims.get("id", claims.get("sub"))
        if user_id is None or str(user_id) == "":
            self._record("invalid")
            raise InvalidCredential("Token missing user id")

        self._record("ok")
        return Identity(
            user_id=str(user_id),
            username=claims.get("username") or claims.get("preferred_username"),
            issued_at=_as_datetime(claims.get("iat")),
            expires_at=_as_datetime(claims.get("exp"))
        )

    def _record(self, status: str):
        if self.metrics:
            self.metrics.increment_counter("auth_attempts_total", status=status)
