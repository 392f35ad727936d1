"""Server-side glue for the video-calling provider: user tokens and call ids."""

from __future__ import annotations

import secrets
import time
from typing import Any, Dict, Optional

import jwt


class StreamVideoClient:
    def __init__(self, api_key: str, api_secret: str) -> None:
        self.api_key = api_key
        self.api_secret = api_secret

    def create_token(self, user_id: str, ttl_seconds: int = 3600, now: Optional[int] = None) -> str:
        """HS256 JWT the client presents to join calls as ``user_id``."""
        if not self.api_secret:
            raise RuntimeError("Video provider secret is not configured")
        issued = int(now if now is not None else time.time())
        claims: Dict[str, Any] = {
            "user_id": user_id,
            # One minute of clock-skew allowance
            "iat": issued - 60,
            "exp": issued + int(ttl_seconds),
        }
        return jwt.encode(claims, self.api_secret, algorithm="HS256")

    @staticmethod
    def generate_call_id() -> str:
        return f"call_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
