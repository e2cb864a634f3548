from __future__ import annotations

import hmac
import secrets
from typing import Optional

STATE_BYTES = 32


class OAuthStateGuard:
    """Anti-CSRF state for the OAuth redirect round trip.

    The value is never stored server-side; the caller keeps it in a cookie
    and discards that cookie after one comparison.
    """

    def generate(self) -> str:
        return secrets.token_urlsafe(STATE_BYTES)

    def is_valid(self, expected: Optional[str], actual: Optional[str]) -> bool:
        if not expected or not expected.strip():
            return False
        if not actual or not actual.strip():
            return False
        return hmac.compare_digest(expected.encode("utf-8"), actual.encode("utf-8"))
