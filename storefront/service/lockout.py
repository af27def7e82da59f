from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from storefront.storage.models import Account


@dataclass
class LockoutOutcome:
    attempts: int
    remaining_attempts: int
    locked: bool
    just_locked: bool = False
    notify: bool = False
    require_captcha: bool = False
    locked_until: Optional[datetime] = None


class LockoutPolicy:
    """Failed-login counter with a time-boxed lock.

    Unlocked(0) -> Unlocked(1..n-1) -> Locked(until) on the n-th consecutive
    failure. An elapsed lock is only cleared by the next failed attempt, which
    counts as the first failure of a new run; nothing sweeps locks in the
    background. Methods mutate the account in place and are meant to run
    inside the store's atomic ``update_account`` callback.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        lock_minutes: int = 15,
        captcha_after: int = 3,
        notice_cooldown_seconds: int = 60,
    ) -> None:
        self.max_attempts = max_attempts
        self.lock_duration = timedelta(minutes=lock_minutes)
        self.captcha_after = captcha_after
        self.notice_cooldown = timedelta(seconds=notice_cooldown_seconds)

    def is_locked(self, account: Account, now: datetime) -> bool:
        return account.is_locked(now)

    def minutes_remaining(self, account: Account, now: datetime) -> int:
        if not account.locked_until or account.locked_until <= now:
            return 0
        return math.ceil((account.locked_until - now).total_seconds() / 60)

    def requires_captcha(self, account: Account, now: datetime) -> bool:
        if account.locked_until and account.locked_until <= now:
            # lock elapsed; the next failure starts a fresh run
            return False
        return account.failed_attempts >= self.captcha_after

    def register_failure(self, account: Account, now: datetime) -> LockoutOutcome:
        if account.is_locked(now):
            return LockoutOutcome(
                attempts=account.failed_attempts,
                remaining_attempts=0,
                locked=True,
                require_captcha=True,
                locked_until=account.locked_until,
            )

        if account.locked_until is not None:
            account.failed_attempts = 1
            account.locked_until = None
        else:
            account.failed_attempts += 1
        account.last_failed_at = now

        just_locked = False
        notify = False
        if account.failed_attempts >= self.max_attempts:
            account.locked_until = now + self.lock_duration
            just_locked = True
            last_notice = account.lock_notified_at
            if last_notice is None or now - last_notice >= self.notice_cooldown:
                account.lock_notified_at = now
                notify = True

        return LockoutOutcome(
            attempts=account.failed_attempts,
            remaining_attempts=max(0, self.max_attempts - account.failed_attempts),
            locked=just_locked,
            just_locked=just_locked,
            notify=notify,
            require_captcha=account.failed_attempts >= self.captcha_after,
            locked_until=account.locked_until,
        )

    def reset(self, account: Account) -> None:
        account.failed_attempts = 0
        account.locked_until = None
