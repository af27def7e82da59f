from __future__ import annotations

import hmac
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from storefront.service.challenges import ChallengeStore

_CAPTCHA_ALPHABET = string.ascii_uppercase + string.digits
_NAMESPACE = "captcha"


@dataclass
class CaptchaChallenge:
    captcha_id: str
    captcha_text: str
    expires_in: int


class CaptchaService:
    """Text CAPTCHA challenges with a TTL; each one can be answered once."""

    def __init__(self, challenges: ChallengeStore, *, ttl_seconds: int = 300, length: int = 6) -> None:
        self.challenges = challenges
        self.ttl_seconds = ttl_seconds
        self.length = length

    async def issue(self) -> CaptchaChallenge:
        captcha_id = secrets.token_urlsafe(16)
        text = "".join(secrets.choice(_CAPTCHA_ALPHABET) for _ in range(self.length))
        await self.challenges.put(_NAMESPACE, captcha_id, {"text": text}, self.ttl_seconds)
        return CaptchaChallenge(captcha_id=captcha_id, captcha_text=text, expires_in=self.ttl_seconds)

    async def verify(self, captcha_id: Optional[str], answer: Optional[str]) -> bool:
        if not captcha_id or not answer:
            return False
        stored = await self.challenges.pop(_NAMESPACE, captcha_id)
        if not stored:
            return False
        expected = str(stored.get("text", "")).upper()
        return hmac.compare_digest(expected.encode(), answer.strip().upper().encode())
