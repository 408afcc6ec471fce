from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal, Sequence

import jwt

from .config import Settings
from .exceptions import PayloadValidationError

TokenScope = Literal["publish", "subscribe"]

CAPABILITY_ALGORITHM = "HS256"
CAPABILITY_CLAIM = "mercure"


class CapabilityTokenIssuer:
    """Issue signed tokens that scope a hub client to a list of topics.

    Tokens are plain HS256 JWTs: ``{"mercure": {"publish": [...]}}`` or
    ``{"mercure": {"subscribe": [...]}}``. Without a TTL they carry no ``exp``
    claim and identical topics always produce the identical token.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttl_seconds: int | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        if not secret:
            raise ValueError("capability tokens require a signing secret")
        self._secret = secret
        self._ttl_seconds = ttl_seconds
        self._now = now or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings: Settings) -> "CapabilityTokenIssuer":
        return cls(settings.mercure.jwt_secret, ttl_seconds=settings.mercure.token_ttl_seconds)

    def issue_publisher_token(self, topics: Sequence[str]) -> str:
        return self._issue("publish", topics)

    def issue_subscriber_token(self, topics: Sequence[str]) -> str:
        return self._issue("subscribe", topics)

    def _issue(self, scope: TokenScope, topics: Sequence[str]) -> str:
        payload: dict[str, Any] = {CAPABILITY_CLAIM: {scope: _normalize_topics(topics)}}
        if self._ttl_seconds is not None:
            payload["exp"] = self._now() + timedelta(seconds=self._ttl_seconds)
        return jwt.encode(
            payload,
            self._secret,
            algorithm=CAPABILITY_ALGORITHM,
            headers={"typ": "JWT"},
        )


def decode_capability_token(token: str, secret: str) -> dict[str, Any]:
    """Verify a capability token the way the hub does and return its claims."""
    return jwt.decode(token, secret, algorithms=[CAPABILITY_ALGORITHM])


def _normalize_topics(topics: Sequence[str]) -> list[str]:
    if isinstance(topics, str):
        raise PayloadValidationError("topics must be a sequence of strings, not a single string")
    normalized = [topic for topic in topics if isinstance(topic, str) and topic.strip()]
    if not normalized or len(normalized) != len(topics):
        raise PayloadValidationError("topics must be a non-empty list of non-empty strings")
    return normalized


__all__ = ["CapabilityTokenIssuer", "decode_capability_token", "TokenScope"]
