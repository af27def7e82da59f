from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from storefront.config import Settings
from storefront.logging import get_logger
from storefront.service.audit import AuditAction, AuditResult, AuditSeverity, AuditSink
from storefront.service.captcha import CaptchaService
from storefront.service.challenges import ChallengeStore
from storefront.service.credentials import CredentialStore
from storefront.service.email import EmailService
from storefront.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    LockedError,
    NotFoundError,
    PasswordExpiredError,
    ValidationError,
)
from storefront.service.lockout import LockoutOutcome, LockoutPolicy
from storefront.service.password_lifecycle import (
    ExpiryStatus,
    PasswordLifecycle,
    PasswordStrength,
)
from storefront.service.sessions import SessionManager
from storefront.service.two_factor import (
    SecondFactorResult,
    TwoFactorEngine,
    TwoFactorSetup,
)
from storefront.storage.common import normalize_email, token_digest
from storefront.storage.errors import ConstraintViolation
from storefront.storage.models import ROLES, Account, Session, utcnow

logger = get_logger(__name__)

_TWO_FACTOR_NAMESPACE = "login_2fa"


@dataclass
class AuthContext:
    account_id: str
    email: str
    role: str
    session_id: Optional[str] = None
    session_expires_at: Optional[datetime] = None


@dataclass
class LoginResult:
    account: Account
    session: Optional[Session] = None
    require_two_factor: bool = False
    challenge_id: Optional[str] = None
    second_factor: Optional[SecondFactorResult] = None


class AuthService:
    """Account security flows composed from the credential, lockout, 2FA,
    session and password-lifecycle components.

    Every read-modify-write of an account goes through the store's atomic
    ``update_account`` callback; nothing here writes back an account that
    was read earlier in the request.
    """

    def __init__(
        self,
        store: Any,
        settings: Settings,
        *,
        email: EmailService,
        audit: AuditSink,
        challenges: Optional[ChallengeStore] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.email = email
        self.audit = audit
        self.challenges = challenges or ChallengeStore()
        self.credentials = CredentialStore(history_size=settings.password_history_size)
        self.lockout = LockoutPolicy(
            max_attempts=settings.lockout_max_attempts,
            lock_minutes=settings.lockout_minutes,
            captcha_after=settings.captcha_after_failures,
            notice_cooldown_seconds=settings.lock_notice_cooldown_seconds,
        )
        self.two_factor = TwoFactorEngine(
            store, self.credentials, issuer=settings.totp_issuer
        )
        self.sessions = SessionManager(
            store,
            inactivity_minutes=settings.session_inactivity_minutes,
            absolute_ttl_hours=settings.session_absolute_ttl_hours,
        )
        self.passwords = PasswordLifecycle(
            self.credentials,
            min_length=settings.password_min_length,
            max_age_days=settings.password_max_age_days,
            warning_days=settings.password_warning_days,
        )
        self.captcha = CaptchaService(
            self.challenges, ttl_seconds=settings.captcha_ttl_seconds
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    async def _notify(self, template: str, recipient: str, data: Optional[Dict[str, Any]] = None) -> bool:
        return await asyncio.to_thread(self.email.send, template, recipient, data or {})

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    def _issue_token(self, ttl_minutes: int) -> tuple[str, str, datetime]:
        token = secrets.token_urlsafe(32)
        return token, token_digest(token), utcnow() + timedelta(minutes=ttl_minutes)

    # ------------------------------------------------------------------
    # signup and email verification
    # ------------------------------------------------------------------
    async def signup(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        normalized = normalize_email(email)
        if "@" not in normalized:
            raise ValidationError("invalid email address", detail={"field": "email"})
        self.passwords.enforce_complexity(password)
        if self.store.get_account_by_email(normalized):
            raise ConflictError("email already registered", detail={"field": "email"})

        role = "admin" if normalized == self.settings.admin_email else "user"
        password_hash = await asyncio.to_thread(self.credentials.hash, password)
        token, digest, expires_at = self._issue_token(
            self.settings.email_verification_ttl_minutes
        )
        try:
            account = self.store.create_account(
                normalized,
                password_hash,
                role=role,
                name=name,
                email_verified=False,
                verification_token=digest,
                verification_expires_at=expires_at,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc

        await self._notify("email_verification", account.email, {"token": token, "name": name})
        self.audit.record(
            AuditAction.SIGNUP,
            account_id=account.id,
            resource="account",
            ip=ip,
            user_agent=user_agent,
            metadata={"role": role},
        )
        logger.info("signup_succeeded", account_id=account.id, role=role)
        return account

    async def verify_email(self, token: str) -> Account:
        now = utcnow()

        def _verify(acc: Account) -> None:
            if not acc.verification_expires_at or acc.verification_expires_at <= now:
                raise ValidationError("invalid or expired verification token")
            acc.email_verified = True
            acc.verification_token = None
            acc.verification_expires_at = None

        account = self.store.update_account_by_token(
            "verification", token_digest(token or ""), _verify
        )
        if not account:
            raise ValidationError("invalid or expired verification token")
        self.audit.record(AuditAction.EMAIL_VERIFIED, account_id=account.id, resource="account")
        return account

    async def resend_verification(self, email: str) -> None:
        """Re-issue a verification token; silent for unknown or verified accounts."""
        account = self.store.get_account_by_email(email)
        if not account or account.email_verified:
            return
        token, digest, expires_at = self._issue_token(
            self.settings.email_verification_ttl_minutes
        )

        def _reissue(acc: Account) -> None:
            acc.verification_token = digest
            acc.verification_expires_at = expires_at

        self.store.update_account(account.id, _reissue)
        await self._notify("email_verification", account.email, {"token": token, "name": account.name})

    # ------------------------------------------------------------------
    # login
    # ------------------------------------------------------------------
    async def issue_captcha(self):
        return await self.captcha.issue()

    async def _register_failure(
        self,
        account: Account,
        *,
        reason: str,
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> LockoutOutcome:
        now = utcnow()
        holder: Dict[str, LockoutOutcome] = {}

        def _fail(acc: Account) -> None:
            holder["outcome"] = self.lockout.register_failure(acc, now)

        self.store.update_account(account.id, _fail)
        outcome = holder["outcome"]
        self.audit.record(
            AuditAction.LOGIN_FAILED,
            account_id=account.id,
            resource="session",
            ip=ip,
            user_agent=user_agent,
            result=AuditResult.FAILURE,
            metadata={"reason": reason, "attempts": outcome.attempts},
            severity=AuditSeverity.MEDIUM,
        )
        if outcome.just_locked:
            self.audit.record(
                AuditAction.ACCOUNT_LOCKED,
                account_id=account.id,
                resource="account",
                ip=ip,
                user_agent=user_agent,
                metadata={"attempts": outcome.attempts},
                severity=AuditSeverity.HIGH,
            )
            logger.warning("account_locked", account_id=account.id)
            if outcome.notify:
                await self._notify(
                    "account_locked",
                    account.email,
                    {"lock_minutes": self.settings.lockout_minutes},
                )
        return outcome

    def _failure_error(self, message: str, outcome: LockoutOutcome) -> AuthenticationError:
        detail: Dict[str, Any] = {
            "remainingAttempts": outcome.remaining_attempts,
            "requireCaptcha": outcome.require_captcha,
            "locked": outcome.locked,
        }
        if outcome.locked:
            detail["lockTimeRemaining"] = self.settings.lockout_minutes
        return AuthenticationError(message, status_code=400, detail=detail)

    def _ensure_unlocked(self, account: Account, now: datetime, *, ip=None, user_agent=None) -> None:
        if not self.lockout.is_locked(account, now):
            return
        minutes = self.lockout.minutes_remaining(account, now)
        self.audit.record(
            AuditAction.LOGIN_BLOCKED,
            account_id=account.id,
            resource="session",
            ip=ip,
            user_agent=user_agent,
            result=AuditResult.FAILURE,
            metadata={"lockTimeRemaining": minutes},
            severity=AuditSeverity.MEDIUM,
        )
        raise LockedError(
            f"account is locked; try again in {minutes} minutes",
            detail={"locked": True, "lockTimeRemaining": minutes},
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        two_factor_code: Optional[str] = None,
        captcha_id: Optional[str] = None,
        captcha_text: Optional[str] = None,
        previous_session_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        account = self.store.get_account_by_email(email)
        if not account:
            raise NotFoundError("account not found")
        now = utcnow()
        # a locked account never reaches the password hash
        self._ensure_unlocked(account, now, ip=ip, user_agent=user_agent)
        if not account.email_verified:
            raise ForbiddenError(
                "please verify your email before logging in",
                detail={"emailNotVerified": True},
            )
        if self.passwords.is_expired(account, now):
            raise PasswordExpiredError(
                "password has expired and must be changed",
                detail={"passwordExpired": True, "requiresPasswordChange": True},
            )
        if self.settings.login_captcha_enforced and self.lockout.requires_captcha(account, now):
            if not await self.captcha.verify(captcha_id, captcha_text):
                raise ValidationError(
                    "captcha verification required",
                    detail={"captchaRequired": True, "requireCaptcha": True},
                )

        valid = await asyncio.to_thread(self.credentials.verify, password, account.password_hash)
        if not valid:
            outcome = await self._register_failure(
                account, reason="bad_password", ip=ip, user_agent=user_agent
            )
            raise self._failure_error("invalid email or password", outcome)

        if account.two_factor_enabled:
            if not two_factor_code:
                challenge_id = await self._open_two_factor_challenge(account)
                logger.info("login_requires_2fa", account_id=account.id)
                return LoginResult(
                    account=account, require_two_factor=True, challenge_id=challenge_id
                )
            second = await asyncio.to_thread(
                self.two_factor.verify_second_factor, account.id, two_factor_code
            )
            if not second:
                outcome = await self._register_failure(
                    account, reason="bad_second_factor", ip=ip, user_agent=user_agent
                )
                raise self._failure_error("invalid two-factor code", outcome)
        else:
            second = None

        return self._complete_login(
            account,
            second_factor=second,
            previous_session_id=previous_session_id,
            ip=ip,
            user_agent=user_agent,
        )

    async def _open_two_factor_challenge(self, account: Account) -> str:
        challenge_id = secrets.token_urlsafe(24)
        ttl = self.settings.two_factor_challenge_ttl_seconds
        await self.challenges.put(
            _TWO_FACTOR_NAMESPACE,
            challenge_id,
            {"account_id": account.id, "expires_at": time.time() + ttl},
            ttl,
        )
        return challenge_id

    async def complete_two_factor_login(
        self,
        challenge_id: str,
        code: str,
        *,
        previous_session_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        # Take the challenge out first so a valid code can only be spent once
        challenge = await self.challenges.pop(_TWO_FACTOR_NAMESPACE, challenge_id)
        if not challenge:
            raise AuthenticationError("two-factor challenge expired or invalid")
        account = self._require_account(challenge["account_id"])
        self._ensure_unlocked(account, utcnow(), ip=ip, user_agent=user_agent)

        second = await asyncio.to_thread(
            self.two_factor.verify_second_factor, account.id, code
        )
        if not second:
            outcome = await self._register_failure(
                account, reason="bad_second_factor", ip=ip, user_agent=user_agent
            )
            remaining_ttl = int(challenge.get("expires_at", 0) - time.time())
            if not outcome.locked and remaining_ttl > 0:
                await self.challenges.put(
                    _TWO_FACTOR_NAMESPACE, challenge_id, challenge, remaining_ttl
                )
            raise self._failure_error("invalid two-factor code", outcome)

        return self._complete_login(
            account,
            second_factor=second,
            previous_session_id=previous_session_id,
            ip=ip,
            user_agent=user_agent,
        )

    def _complete_login(
        self,
        account: Account,
        *,
        second_factor: Optional[SecondFactorResult],
        previous_session_id: Optional[str],
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> LoginResult:
        now = utcnow()

        def _succeed(acc: Account) -> None:
            self.lockout.reset(acc)
            acc.last_login_at = now

        refreshed = self.store.update_account(account.id, _succeed) or account
        session = self.sessions.create(
            refreshed,
            previous_session_id=previous_session_id,
            user_agent=user_agent,
            ip_addr=ip,
        )
        self.audit.record(
            AuditAction.LOGIN_SUCCESS,
            account_id=refreshed.id,
            resource="session",
            ip=ip,
            user_agent=user_agent,
            metadata={"two_factor": second_factor.method if second_factor else None},
        )
        if second_factor and second_factor.method == "backup_code":
            self.audit.record(
                AuditAction.BACKUP_CODE_USED,
                account_id=refreshed.id,
                resource="two_factor",
                ip=ip,
                user_agent=user_agent,
                metadata={"remaining": second_factor.remaining_backup_codes},
                severity=AuditSeverity.MEDIUM,
            )
        logger.info("login_succeeded", account_id=refreshed.id)
        return LoginResult(account=refreshed, session=session, second_factor=second_factor)

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def authenticate(self, session_id: Optional[str]) -> tuple[AuthContext, Account]:
        session = self.sessions.resolve(session_id)
        account = self.store.get_account(session.account_id)
        if not account:
            self.sessions.destroy(session.id)
            raise AuthenticationError("invalid session")
        ctx = AuthContext(
            account_id=account.id,
            email=account.email,
            role=account.role,
            session_id=session.id,
            session_expires_at=self.sessions.idle_expires_at(session),
        )
        return ctx, account

    async def logout(
        self,
        session_id: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Destroy the session if there is one; never an error."""
        if not session_id:
            return
        session = self.store.get_session(session_id)
        self.sessions.destroy(session_id)
        if session:
            self.audit.record(
                AuditAction.LOGOUT,
                account_id=session.account_id,
                resource="session",
                ip=ip,
                user_agent=user_agent,
            )

    def refresh_session(self, session_id: Optional[str]) -> Session:
        return self.sessions.refresh(session_id)

    # ------------------------------------------------------------------
    # password reset and change
    # ------------------------------------------------------------------
    async def request_password_reset(
        self, email: str, *, ip: Optional[str] = None, user_agent: Optional[str] = None
    ) -> None:
        account = self.store.get_account_by_email(email)
        if not account:
            logger.info("password_reset_unknown_email")
            return
        token, digest, expires_at = self._issue_token(self.settings.password_reset_ttl_minutes)

        def _stage(acc: Account) -> None:
            acc.reset_token = digest
            acc.reset_expires_at = expires_at

        self.store.update_account(account.id, _stage)
        await self._notify("password_reset", account.email, {"token": token})
        self.audit.record(
            AuditAction.PASSWORD_RESET_REQUESTED,
            account_id=account.id,
            resource="account",
            ip=ip,
            user_agent=user_agent,
        )

    def verify_reset_token(self, token: str) -> Account:
        account = self.store.find_account_by_token("reset", token_digest(token or ""))
        if not account or not account.reset_expires_at or account.reset_expires_at <= utcnow():
            raise ValidationError("invalid or expired reset token")
        return account

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        self.passwords.enforce_complexity(new_password)
        account = self.verify_reset_token(token)
        await asyncio.to_thread(self.passwords.ensure_not_reused, new_password, account)
        new_hash = await asyncio.to_thread(self.credentials.hash, new_password)
        now = utcnow()

        def _reset(acc: Account) -> None:
            if not acc.reset_expires_at or acc.reset_expires_at <= now:
                raise ValidationError("invalid or expired reset token")
            if acc.password_hash != account.password_hash:
                # password changed since the history check ran
                raise ConflictError("password changed concurrently; request a new reset link")
            self.passwords.apply_new_password(acc, new_hash, now)
            acc.reset_token = None
            acc.reset_expires_at = None

        updated = self.store.update_account_by_token("reset", token_digest(token), _reset)
        if not updated:
            raise ValidationError("invalid or expired reset token")
        self.sessions.revoke_all(updated.id)
        await self._notify("password_changed", updated.email, {"changed_at": now.isoformat()})
        self.audit.record(
            AuditAction.PASSWORD_RESET,
            account_id=updated.id,
            resource="account",
            ip=ip,
            user_agent=user_agent,
            severity=AuditSeverity.MEDIUM,
        )
        return updated

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PasswordStrength:
        account = self._require_account(account_id)
        valid = await asyncio.to_thread(
            self.credentials.verify, current_password, account.password_hash
        )
        if not valid:
            raise AuthenticationError("current password is incorrect", status_code=400)
        self.passwords.enforce_complexity(new_password)
        await asyncio.to_thread(self.passwords.ensure_not_reused, new_password, account)
        new_hash = await asyncio.to_thread(self.credentials.hash, new_password)
        now = utcnow()

        def _change(acc: Account) -> None:
            if acc.password_hash != account.password_hash:
                raise ConflictError("password changed concurrently; try again")
            self.passwords.apply_new_password(acc, new_hash, now)

        self.store.update_account(account_id, _change)
        self.sessions.revoke_all(account_id, except_session_id=current_session_id)
        await self._notify("password_changed", account.email, {"changed_at": now.isoformat()})
        self.audit.record(
            AuditAction.PASSWORD_CHANGED,
            account_id=account_id,
            resource="account",
            ip=ip,
            user_agent=user_agent,
            severity=AuditSeverity.MEDIUM,
        )
        return self.passwords.strength(new_password, [account.email, account.name or ""])

    def check_strength(self, password: str, user_inputs: Optional[List[str]] = None) -> PasswordStrength:
        return self.passwords.strength(password, user_inputs)

    async def expiry_status(self, account_id: str) -> ExpiryStatus:
        account = self._require_account(account_id)
        now = utcnow()
        status = self.passwords.expiry_status(account, now)
        if status.in_warning_window and not account.password_expiry_warned:
            claimed: Dict[str, bool] = {}

            def _claim(acc: Account) -> None:
                claimed["ok"] = self.passwords.claim_expiry_warning(acc, now)

            self.store.update_account(account_id, _claim)
            if claimed.get("ok"):
                await self._notify(
                    "password_expiry_warning",
                    account.email,
                    {"days_remaining": status.days_remaining},
                )
        return status

    def ensure_password_current(self, account: Account) -> None:
        if self.passwords.is_expired(account):
            raise PasswordExpiredError(
                "password has expired and must be changed",
                detail={"passwordExpired": True, "requiresPasswordChange": True},
            )

    # ------------------------------------------------------------------
    # two-factor
    # ------------------------------------------------------------------
    def setup_two_factor(self, account_id: str) -> TwoFactorSetup:
        setup = self.two_factor.setup(account_id)
        self.audit.record(AuditAction.TWO_FACTOR_SETUP, account_id=account_id, resource="two_factor")
        return setup

    async def enable_two_factor(self, account_id: str, code: str) -> List[str]:
        codes = self.two_factor.enable(account_id, code)
        account = self._require_account(account_id)
        await self._notify("two_factor_enabled", account.email)
        self.audit.record(
            AuditAction.TWO_FACTOR_ENABLED,
            account_id=account_id,
            resource="two_factor",
            severity=AuditSeverity.MEDIUM,
        )
        return codes

    async def disable_two_factor(self, account_id: str, password: str) -> None:
        await asyncio.to_thread(self.two_factor.disable, account_id, password)
        self.audit.record(
            AuditAction.TWO_FACTOR_DISABLED,
            account_id=account_id,
            resource="two_factor",
            severity=AuditSeverity.HIGH,
        )

    async def regenerate_backup_codes(self, account_id: str, password: str) -> List[str]:
        codes = await asyncio.to_thread(
            self.two_factor.regenerate_backup_codes, account_id, password
        )
        self.audit.record(
            AuditAction.BACKUP_CODES_REGENERATED,
            account_id=account_id,
            resource="two_factor",
            severity=AuditSeverity.MEDIUM,
        )
        return codes

    # ------------------------------------------------------------------
    # admin
    # ------------------------------------------------------------------
    def unlock_account(
        self,
        actor_id: str,
        account_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        account = self.store.update_account(account_id, self.lockout.reset)
        if not account:
            raise NotFoundError("account not found")
        self.audit.record(
            AuditAction.ACCOUNT_UNLOCKED,
            account_id=account_id,
            resource="account",
            ip=ip,
            user_agent=user_agent,
            metadata={"actor_id": actor_id},
            severity=AuditSeverity.MEDIUM,
        )
        return account

    def list_accounts(self, limit: int = 100) -> List[Account]:
        return self.store.list_accounts(limit=limit)

    def set_role(
        self,
        actor_id: str,
        account_id: str,
        role: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        if role not in ROLES:
            raise ValidationError("invalid role", detail={"allowed": sorted(ROLES)})
        if actor_id == account_id:
            raise ValidationError("you cannot change your own role")
        updated = self.store.update_role(account_id, role)
        if not updated:
            raise NotFoundError("account not found")
        self.sessions.revoke_all(account_id)
        self.audit.record(
            AuditAction.ROLE_CHANGED,
            account_id=account_id,
            resource="account",
            ip=ip,
            user_agent=user_agent,
            metadata={"actor_id": actor_id, "role": role},
            severity=AuditSeverity.HIGH,
        )
        return updated

    def delete_account(
        self,
        actor_id: str,
        account_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        if actor_id == account_id:
            raise ValidationError("you cannot delete your own account")
        if not self.store.delete_account(account_id):
            raise NotFoundError("account not found")
        self.audit.record(
            AuditAction.ACCOUNT_DELETED,
            account_id=account_id,
            resource="account",
            ip=ip,
            user_agent=user_agent,
            metadata={"actor_id": actor_id},
            severity=AuditSeverity.HIGH,
        )
