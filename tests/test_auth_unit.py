"""Unit tests for the account security building blocks.

Covers:
- argon2 credential hashing and history rotation
- lockout counter, lazy lock reset and notification cooldown
- password complexity, reuse and expiry
"""

from datetime import timedelta

import pytest

from storefront.service.credentials import CredentialStore
from storefront.service.errors import ConflictError, ValidationError
from storefront.service.lockout import LockoutPolicy
from storefront.service.password_lifecycle import STRENGTH_LABELS, PasswordLifecycle
from storefront.storage.models import Account, utcnow


@pytest.fixture
def credentials():
    return CredentialStore(history_size=5)


@pytest.fixture
def account(credentials):
    return Account(
        id="acc-1",
        email="shopper@example.com",
        password_hash=credentials.hash("Initial#Pass123"),
        email_verified=True,
    )


class TestCredentialStore:
    def test_hash_is_argon2id_and_salted(self, credentials):
        first = credentials.hash("Sup3r$ecretPass")
        second = credentials.hash("Sup3r$ecretPass")
        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_matches_only_the_right_password(self, credentials):
        hashed = credentials.hash("Sup3r$ecretPass")
        assert credentials.verify("Sup3r$ecretPass", hashed)
        assert not credentials.verify("wrong-password", hashed)

    def test_verify_handles_missing_or_garbage_hash(self, credentials):
        assert not credentials.verify("anything", None)
        assert not credentials.verify("anything", "not-a-hash")

    def test_rotate_keeps_newest_first_and_caps_size(self, credentials):
        history = [f"h{i}" for i in range(5)]
        rotated = credentials.rotate("current", history)
        assert rotated[0] == "current"
        assert len(rotated) == 5
        assert "h4" not in rotated


class TestLockoutPolicy:
    def test_fifth_failure_locks_for_fifteen_minutes(self, account):
        policy = LockoutPolicy(max_attempts=5, lock_minutes=15)
        now = utcnow()
        for _ in range(4):
            outcome = policy.register_failure(account, now)
            assert not outcome.locked
        outcome = policy.register_failure(account, now)
        assert outcome.locked and outcome.just_locked
        assert outcome.remaining_attempts == 0
        assert account.locked_until == now + timedelta(minutes=15)
        assert policy.is_locked(account, now + timedelta(minutes=14))
        assert not policy.is_locked(account, now + timedelta(minutes=15))

    def test_failure_while_locked_does_not_extend_lock(self, account):
        policy = LockoutPolicy()
        now = utcnow()
        for _ in range(5):
            policy.register_failure(account, now)
        locked_until = account.locked_until
        outcome = policy.register_failure(account, now + timedelta(minutes=1))
        assert outcome.locked and not outcome.just_locked
        assert account.locked_until == locked_until
        assert account.failed_attempts == 5

    def test_failure_after_lock_elapsed_starts_fresh_run(self, account):
        policy = LockoutPolicy()
        now = utcnow()
        for _ in range(5):
            policy.register_failure(account, now)
        later = now + timedelta(minutes=16)
        outcome = policy.register_failure(account, later)
        assert account.failed_attempts == 1
        assert account.locked_until is None
        assert outcome.remaining_attempts == 4
        assert not outcome.locked

    def test_captcha_required_after_threshold(self, account):
        policy = LockoutPolicy(captcha_after=3)
        now = utcnow()
        outcomes = [policy.register_failure(account, now) for _ in range(3)]
        assert [o.require_captcha for o in outcomes] == [False, False, True]
        assert policy.requires_captcha(account, now)

    def test_lock_notice_respects_cooldown(self, account):
        policy = LockoutPolicy(notice_cooldown_seconds=60)
        now = utcnow()
        for _ in range(4):
            policy.register_failure(account, now)
        assert policy.register_failure(account, now).notify
        # lock expires and the account is locked again within the cooldown
        account.locked_until = now
        for _ in range(4):
            policy.register_failure(account, now + timedelta(seconds=10))
        again = policy.register_failure(account, now + timedelta(seconds=10))
        assert again.just_locked
        assert not again.notify

    def test_reset_clears_counter_and_lock(self, account):
        policy = LockoutPolicy()
        now = utcnow()
        for _ in range(5):
            policy.register_failure(account, now)
        policy.reset(account)
        assert account.failed_attempts == 0
        assert account.locked_until is None
        assert policy.minutes_remaining(account, now) == 0


class TestPasswordLifecycle:
    @pytest.fixture
    def lifecycle(self, credentials):
        return PasswordLifecycle(credentials, min_length=12, max_age_days=90, warning_days=7)

    def test_complexity_lists_every_failed_rule(self, lifecycle):
        errors = lifecycle.complexity_errors("short")
        assert len(errors) == 4
        assert any("12 characters" in e for e in errors)
        assert lifecycle.complexity_errors("Valid#Password1") == []

    def test_enforce_complexity_raises_with_error_list(self, lifecycle):
        with pytest.raises(ValidationError) as exc:
            lifecycle.enforce_complexity("alllowercase")
        assert exc.value.detail["errors"]

    def test_strength_is_advisory(self, lifecycle):
        weak = lifecycle.strength("password")
        strong = lifecycle.strength("correct-Horse-battery-Staple-91!")
        assert weak.score < strong.score
        assert weak.label == STRENGTH_LABELS[weak.score]
        assert lifecycle.strength("").score == 0

    def test_reuse_of_current_password_rejected(self, lifecycle, account):
        with pytest.raises(ConflictError) as exc:
            lifecycle.ensure_not_reused("Initial#Pass123", account)
        assert exc.value.detail == {"passwordInHistory": True}

    def test_reuse_of_historic_password_rejected(self, lifecycle, credentials, account):
        now = utcnow()
        lifecycle.apply_new_password(account, credentials.hash("Second#Pass456"), now)
        with pytest.raises(ConflictError):
            lifecycle.ensure_not_reused("Initial#Pass123", account)
        lifecycle.ensure_not_reused("Brand#NewPass789", account)

    def test_apply_new_password_resets_expiry_clock(self, lifecycle, credentials, account):
        account.password_changed_at = utcnow() - timedelta(days=100)
        account.password_expiry_warned = True
        now = utcnow()
        old_hash = account.password_hash
        lifecycle.apply_new_password(account, credentials.hash("Second#Pass456"), now)
        assert account.password_history[0] == old_hash
        assert account.password_changed_at == now
        assert account.password_expiry_warned is False
        assert not lifecycle.is_expired(account, now)

    def test_expiry_status_warning_window(self, lifecycle, account):
        now = utcnow()
        account.password_changed_at = now - timedelta(days=85)
        status = lifecycle.expiry_status(account, now)
        assert not status.is_expired
        assert status.days_remaining == 5
        assert status.in_warning_window

    def test_expiry_status_expired(self, lifecycle, account):
        now = utcnow()
        account.password_changed_at = now - timedelta(days=93)
        status = lifecycle.expiry_status(account, now)
        assert status.is_expired and status.requires_change
        assert status.days_remaining == 0
        assert status.days_overdue == 3
        assert not status.in_warning_window

    def test_expiry_warning_claimed_once(self, lifecycle, account):
        now = utcnow()
        account.password_changed_at = now - timedelta(days=86)
        assert lifecycle.claim_expiry_warning(account, now)
        assert not lifecycle.claim_expiry_warning(account, now)

    def test_no_warning_outside_window(self, lifecycle, account):
        now = utcnow()
        account.password_changed_at = now - timedelta(days=10)
        assert not lifecycle.claim_expiry_warning(account, now)
