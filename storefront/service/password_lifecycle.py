from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from zxcvbn import zxcvbn

from storefront.logging import get_logger
from storefront.service.credentials import CredentialStore
from storefront.service.errors import ConflictError, ValidationError
from storefront.storage.models import Account, utcnow

logger = get_logger(__name__)

SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"
STRENGTH_LABELS = ("Very Weak", "Weak", "Fair", "Good", "Strong")
# zxcvbn gets slow and refuses very long inputs; the tail adds nothing to the score
_STRENGTH_INPUT_LIMIT = 72


@dataclass
class PasswordStrength:
    score: int
    label: str
    warning: str = ""
    suggestions: List[str] = field(default_factory=list)
    crack_time_display: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "label": self.label,
            "warning": self.warning,
            "suggestions": list(self.suggestions),
            "crack_time_display": self.crack_time_display,
        }


@dataclass
class ExpiryStatus:
    is_expired: bool
    days_remaining: int
    password_changed_at: datetime
    expires_at: datetime
    requires_change: bool
    in_warning_window: bool
    days_overdue: int = 0


class PasswordLifecycle:
    """Complexity gate, reuse history, 90-day expiry and advisory strength.

    The strength score never blocks a change; only ``enforce_complexity``
    and ``ensure_not_reused`` reject passwords.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        min_length: int = 12,
        max_age_days: int = 90,
        warning_days: int = 7,
    ) -> None:
        self.credentials = credentials
        self.min_length = min_length
        self.max_age = timedelta(days=max_age_days)
        self.max_age_days = max_age_days
        self.warning_days = warning_days

    # -- strength and complexity -------------------------------------------
    def strength(self, password: str, user_inputs: Optional[Sequence[str]] = None) -> PasswordStrength:
        if not password:
            return PasswordStrength(score=0, label=STRENGTH_LABELS[0])
        result = zxcvbn(
            password[:_STRENGTH_INPUT_LIMIT],
            user_inputs=[value for value in (user_inputs or []) if value],
        )
        score = int(result.get("score", 0))
        feedback = result.get("feedback") or {}
        crack_times = result.get("crack_times_display") or {}
        return PasswordStrength(
            score=score,
            label=STRENGTH_LABELS[max(0, min(score, 4))],
            warning=feedback.get("warning") or "",
            suggestions=list(feedback.get("suggestions") or []),
            crack_time_display=str(
                crack_times.get("offline_slow_hashing_1e4_per_second", "")
            ),
        )

    def complexity_errors(self, password: str) -> List[str]:
        password = password or ""
        errors: List[str] = []
        if len(password) < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters long")
        if not any(ch.isupper() for ch in password):
            errors.append("Password must contain at least one uppercase letter")
        if not any(ch.islower() for ch in password):
            errors.append("Password must contain at least one lowercase letter")
        if not any(ch.isdigit() for ch in password):
            errors.append("Password must contain at least one number")
        if not any(ch in SYMBOLS for ch in password):
            errors.append("Password must contain at least one special character")
        return errors

    def enforce_complexity(self, password: str) -> None:
        errors = self.complexity_errors(password)
        if errors:
            raise ValidationError(
                "password does not meet complexity requirements",
                detail={"errors": errors},
            )

    # -- history -------------------------------------------------------------
    def ensure_not_reused(self, password: str, account: Account) -> None:
        """Reject the current password and anything still in the history ring."""
        candidates = [account.password_hash, *account.password_history]
        if self.credentials.history_contains(password, candidates):
            raise ConflictError(
                "password was used recently; choose a different one",
                detail={"passwordInHistory": True},
            )

    def apply_new_password(
        self, account: Account, new_hash: str, now: Optional[datetime] = None
    ) -> None:
        """Mutate ``account`` in place; call from inside ``update_account``."""
        account.password_history = self.credentials.rotate(
            account.password_hash, account.password_history
        )
        account.password_hash = new_hash
        account.password_changed_at = now or utcnow()
        account.password_expiry_warned = False

    # -- expiry ----------------------------------------------------------------
    def expiry_status(self, account: Account, now: Optional[datetime] = None) -> ExpiryStatus:
        now = now or utcnow()
        changed_at = account.password_changed_at
        expires_at = changed_at + self.max_age
        is_expired = now - changed_at >= self.max_age
        if is_expired:
            days_remaining = 0
            days_overdue = (now - expires_at).days
        else:
            days_remaining = math.ceil((expires_at - now).total_seconds() / 86400)
            days_overdue = 0
        return ExpiryStatus(
            is_expired=is_expired,
            days_remaining=days_remaining,
            password_changed_at=changed_at,
            expires_at=expires_at,
            requires_change=is_expired,
            in_warning_window=not is_expired and days_remaining <= self.warning_days,
            days_overdue=days_overdue,
        )

    def is_expired(self, account: Account, now: Optional[datetime] = None) -> bool:
        return self.expiry_status(account, now).is_expired

    def claim_expiry_warning(self, account: Account, now: Optional[datetime] = None) -> bool:
        """Flip the one-shot warning flag; True only for the call that flipped it.

        Mutates ``account`` in place and is meant to run inside
        ``update_account`` so two concurrent requests cannot both claim it.
        """
        status = self.expiry_status(account, now)
        if not status.in_warning_window or account.password_expiry_warned:
            return False
        account.password_expiry_warned = True
        return True
