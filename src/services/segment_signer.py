"""Short-lived signed tokens for segment requests.

A token binds exactly one (video, quality, segment) triple and an expiry:
``base64url(json claims) + "." + base64url(HMAC-SHA256(secret, claims))``.
Expiry is the only revocation; tokens are not single-use.
"""

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

from utils.config import DEFAULT_TOKEN_TTL_SECONDS

logger = logging.getLogger(__name__)

CLOCK_SKEW_SECONDS = 5


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


@dataclass(frozen=True)
class SegmentClaims:
    video_id: str
    quality: str
    segment_number: int
    expires_at: int

    def to_dict(self) -> dict:
        return {
            "video_id": self.video_id,
            "quality": self.quality,
            "segment_number": self.segment_number,
            "exp": self.expires_at,
        }

    def matches(self, video_id: str, quality: str, segment_number: int) -> bool:
        return (
            self.video_id == str(video_id)
            and self.quality == str(quality)
            and self.segment_number == int(segment_number)
        )


class TokenError(Exception):
    """Token is malformed, forged, expired, or bound to another segment.

    ``claims`` holds whatever could be decoded, for non-production diagnostics.
    """

    def __init__(self, reason: str, claims: Optional[dict] = None):
        super().__init__(reason)
        self.reason = reason
        self.claims = claims


class SegmentSigner:
    """Issues and verifies segment tokens."""

    def __init__(
        self,
        secret: Optional[str],
        default_ttl: int = DEFAULT_TOKEN_TTL_SECONDS,
        leeway: int = CLOCK_SKEW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            # Tokens then only survive for this process's lifetime
            logger.warning("No segment signing secret configured, using an ephemeral one")
            secret = secrets.token_urlsafe(32)
        self._key = secret.encode("utf-8")
        self.default_ttl = max(1, int(default_ttl))
        self.leeway = leeway
        self._clock = clock

    @classmethod
    def from_config(cls, config: dict) -> "SegmentSigner":
        return cls(
            secret=config.get("segment_sign_secret"),
            default_ttl=config.get("segment_token_ttl_seconds", DEFAULT_TOKEN_TTL_SECONDS),
        )

    def _signature(self, body: str) -> str:
        return _b64url(hmac.new(self._key, body.encode("utf-8"), hashlib.sha256).digest())

    def sign(
        self,
        video_id: str,
        quality: str,
        segment_number: int,
        ttl: Optional[int] = None,
    ) -> tuple[str, int]:
        """Issue a token for one segment.

        Args:
            video_id: Video the token is bound to
            quality: Quality label the token is bound to
            segment_number: Segment index the token is bound to
            ttl: Lifetime in seconds (defaults to the configured TTL)

        Returns:
            (opaque token string, lifetime in seconds)
        """
        expires_in = max(1, int(ttl or self.default_ttl))
        claims = SegmentClaims(
            video_id=str(video_id),
            quality=str(quality),
            segment_number=int(segment_number),
            expires_at=int(self._clock()) + expires_in,
        )
        body = _b64url(json.dumps(claims.to_dict(), separators=(",", ":")).encode("utf-8"))
        return f"{body}.{self._signature(body)}", expires_in

    def decode_unverified(self, token: str) -> Optional[dict]:
        """Best-effort claim decoding for diagnostics. Never trusts the result."""
        try:
            body = token.split(".", 1)[0]
            return json.loads(_b64url_decode(body))
        except (ValueError, UnicodeDecodeError):
            return None

    def verify(
        self,
        token: str,
        video_id: str,
        quality: str,
        segment_number: int,
    ) -> SegmentClaims:
        """Check signature, expiry and that the token is bound to this segment.

        Raises:
            TokenError: On any mismatch
        """
        if not token or token.count(".") != 1:
            raise TokenError("malformed token")

        body, signature = token.split(".")
        if not hmac.compare_digest(self._signature(body).encode("utf-8"), signature.encode("utf-8")):
            raise TokenError("invalid signature", self.decode_unverified(token))

        try:
            raw = json.loads(_b64url_decode(body))
            claims = SegmentClaims(
                video_id=str(raw["video_id"]),
                quality=str(raw["quality"]),
                segment_number=int(raw["segment_number"]),
                expires_at=int(raw["exp"]),
            )
        except (ValueError, KeyError, TypeError, UnicodeDecodeError):
            raise TokenError("malformed claims")

        if self._clock() > claims.expires_at + self.leeway:
            raise TokenError("token expired", claims.to_dict())

        if not claims.matches(video_id, quality, segment_number):
            raise TokenError("token does not match requested segment", claims.to_dict())

        return claims
