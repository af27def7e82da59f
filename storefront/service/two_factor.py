from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import pyotp
from argon2 import PasswordHasher, Type

from storefront.logging import get_logger
from storefront.service.credentials import CredentialStore
from storefront.service.errors import AuthenticationError, NotFoundError, ValidationError
from storefront.storage.models import Account

logger = get_logger(__name__)

_BACKUP_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_url: str


@dataclass
class SecondFactorResult:
    method: str
    remaining_backup_codes: int


def normalize_code(code: Optional[str]) -> str:
    return "".join(ch for ch in (code or "") if ch.isalnum()).upper()


class TwoFactorEngine:
    """TOTP secret lifecycle and single-use backup codes.

    The setup secret lives in ``two_factor_temp_secret`` until a valid code
    promotes it. Backup codes are stored as argon2 hashes; the plaintext is
    returned exactly once, when the codes are generated.
    """

    def __init__(
        self,
        store: Any,
        credentials: CredentialStore,
        *,
        issuer: str = "Thrift Store",
        valid_window: int = 2,
        backup_code_count: int = 10,
        backup_code_length: int = 8,
        code_hasher: Optional[CredentialStore] = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.issuer = issuer
        self.valid_window = valid_window
        self.backup_code_count = backup_code_count
        self.backup_code_length = backup_code_length
        # Backup codes are high-entropy, so a lighter argon2 profile keeps the linear scan cheap
        self.code_hasher = code_hasher or CredentialStore(
            hasher=PasswordHasher(type=Type.ID, time_cost=2, memory_cost=19456, parallelism=1)
        )

    # -- primitives -------------------------------------------------------
    def generate_secret(self) -> str:
        return pyotp.random_base32(length=32)

    def provisioning_uri(self, secret: str, account_email: str) -> str:
        return pyotp.totp.TOTP(secret).provisioning_uri(
            name=account_email, issuer_name=self.issuer
        )

    def verify_totp(self, secret: Optional[str], code: Optional[str]) -> bool:
        candidate = (code or "").strip().replace(" ", "")
        if not secret or not candidate.isdigit():
            return False
        return pyotp.TOTP(secret).verify(candidate, valid_window=self.valid_window)

    def generate_backup_codes(self) -> Tuple[List[str], List[str]]:
        codes = [
            "".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(self.backup_code_length))
            for _ in range(self.backup_code_count)
        ]
        return codes, [self.code_hasher.hash(code) for code in codes]

    def match_backup_code(self, code: Optional[str], hashes: List[str]) -> Optional[int]:
        candidate = normalize_code(code)
        if len(candidate) != self.backup_code_length:
            return None
        for index, hashed in enumerate(hashes):
            if self.code_hasher.verify(candidate, hashed):
                return index
        return None

    # -- lifecycle ----------------------------------------------------------
    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    def _require_password(self, account: Account, password: str) -> None:
        if not self.credentials.verify(password, account.password_hash):
            raise AuthenticationError("invalid password", status_code=400)

    def status(self, account: Account) -> dict:
        return {
            "enabled": account.two_factor_enabled,
            "pending_setup": bool(account.two_factor_temp_secret),
            "backup_codes_remaining": len(account.backup_code_hashes),
        }

    def setup(self, account_id: str) -> TwoFactorSetup:
        account = self._require_account(account_id)
        if account.two_factor_enabled:
            raise ValidationError("two-factor authentication is already enabled")
        secret = self.generate_secret()

        def _stage(acc: Account) -> None:
            if acc.two_factor_enabled:
                raise ValidationError("two-factor authentication is already enabled")
            # a new setup overwrites any abandoned one
            acc.two_factor_temp_secret = secret

        self.store.update_account(account_id, _stage)
        logger.info("two_factor_setup_started", account_id=account_id)
        return TwoFactorSetup(
            secret=secret, otpauth_url=self.provisioning_uri(secret, account.email)
        )

    def enable(self, account_id: str, code: str) -> List[str]:
        account = self._require_account(account_id)
        if account.two_factor_enabled:
            raise ValidationError("two-factor authentication is already enabled")
        if not account.two_factor_temp_secret:
            raise ValidationError("two-factor setup has not been started")
        if not self.verify_totp(account.two_factor_temp_secret, code):
            raise ValidationError("invalid verification code")
        codes, hashes = self.generate_backup_codes()
        staged_secret = account.two_factor_temp_secret

        def _promote(acc: Account) -> None:
            if acc.two_factor_temp_secret != staged_secret:
                raise ValidationError("two-factor setup was restarted; verify the new secret")
            acc.two_factor_secret = staged_secret
            acc.two_factor_temp_secret = None
            acc.two_factor_enabled = True
            acc.backup_code_hashes = hashes

        self.store.update_account(account_id, _promote)
        logger.info("two_factor_enabled", account_id=account_id)
        return codes

    def disable(self, account_id: str, password: str) -> None:
        account = self._require_account(account_id)
        if not account.two_factor_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        self._require_password(account, password)

        def _clear(acc: Account) -> None:
            acc.two_factor_enabled = False
            acc.two_factor_secret = None
            acc.two_factor_temp_secret = None
            acc.backup_code_hashes = []

        self.store.update_account(account_id, _clear)
        logger.info("two_factor_disabled", account_id=account_id)

    def regenerate_backup_codes(self, account_id: str, password: str) -> List[str]:
        account = self._require_account(account_id)
        if not account.two_factor_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        self._require_password(account, password)
        codes, hashes = self.generate_backup_codes()
        self.store.update_account(
            account_id, lambda acc: setattr(acc, "backup_code_hashes", hashes)
        )
        logger.info("backup_codes_regenerated", account_id=account_id)
        return codes

    def verify_second_factor(
        self, account_id: str, code: Optional[str]
    ) -> Optional[SecondFactorResult]:
        """Check a login code: TOTP first, then consume a matching backup code."""
        outcome: dict = {}

        def _check(acc: Account) -> None:
            if not acc.two_factor_enabled:
                return
            if self.verify_totp(acc.two_factor_secret, code):
                outcome["result"] = SecondFactorResult(
                    method="totp", remaining_backup_codes=len(acc.backup_code_hashes)
                )
                return
            index = self.match_backup_code(code, acc.backup_code_hashes)
            if index is not None:
                acc.backup_code_hashes = (
                    acc.backup_code_hashes[:index] + acc.backup_code_hashes[index + 1 :]
                )
                outcome["result"] = SecondFactorResult(
                    method="backup_code",
                    remaining_backup_codes=len(acc.backup_code_hashes),
                )

        self.store.update_account(account_id, _check)
        result = outcome.get("result")
        if result and result.method == "backup_code":
            logger.info(
                "backup_code_consumed",
                account_id=account_id,
                remaining=result.remaining_backup_codes,
            )
        return result
