"""Tests for the TOTP lifecycle and single-use backup codes."""

import time

import pyotp
import pytest

from storefront.service.credentials import CredentialStore
from storefront.service.errors import AuthenticationError, ValidationError
from storefront.service.two_factor import TwoFactorEngine, normalize_code
from storefront.storage.memory import MemoryStore


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), secret_key="unit-test-secret")


@pytest.fixture
def credentials():
    return CredentialStore()


@pytest.fixture
def engine(memory_store, credentials):
    return TwoFactorEngine(memory_store, credentials, issuer="Thrift Store")


@pytest.fixture
def account(memory_store, credentials):
    return memory_store.create_account(
        "mfa@example.com", credentials.hash("Account#Pass123"), email_verified=True
    )


def _enable(engine, account_id):
    setup = engine.setup(account_id)
    codes = engine.enable(account_id, pyotp.TOTP(setup.secret).now())
    return setup, codes


def test_normalize_code_strips_separators():
    assert normalize_code(" ab12-cd34 ") == "AB12CD34"
    assert normalize_code(None) == ""


def test_setup_stages_secret_without_enabling(engine, memory_store, account):
    setup = engine.setup(account.id)
    stored = memory_store.get_account(account.id)
    assert stored.two_factor_temp_secret == setup.secret
    assert not stored.two_factor_enabled
    assert setup.otpauth_url.startswith("otpauth://totp/")
    assert "Thrift%20Store" in setup.otpauth_url


def test_enable_rejects_wrong_code(engine, account):
    engine.setup(account.id)
    with pytest.raises(ValidationError):
        engine.enable(account.id, "000000")


def test_enable_without_setup_rejected(engine, account):
    with pytest.raises(ValidationError):
        engine.enable(account.id, "123456")


def test_enable_promotes_secret_and_issues_backup_codes(engine, memory_store, account):
    setup, codes = _enable(engine, account.id)
    stored = memory_store.get_account(account.id)
    assert stored.two_factor_enabled
    assert stored.two_factor_secret == setup.secret
    assert stored.two_factor_temp_secret is None
    assert len(codes) == 10
    assert all(len(code) == 8 and code.isalnum() for code in codes)
    # only hashes are kept
    assert not set(codes) & set(stored.backup_code_hashes)


def test_setup_rejected_once_enabled(engine, account):
    _enable(engine, account.id)
    with pytest.raises(ValidationError):
        engine.setup(account.id)


def test_second_factor_accepts_current_totp(engine, account):
    setup, _ = _enable(engine, account.id)
    result = engine.verify_second_factor(account.id, pyotp.TOTP(setup.secret).now())
    assert result.method == "totp"
    assert result.remaining_backup_codes == 10


def _mid_step_time(interval=30):
    # keep the verifier in the same time step as the code generator
    now = time.time()
    if interval - now % interval < 2:
        time.sleep(interval - now % interval + 0.1)
        now = time.time()
    return now


@pytest.mark.parametrize("offset", [-60, -30, 30, 60])
def test_enable_accepts_codes_within_two_steps(engine, memory_store, account, offset):
    setup = engine.setup(account.id)
    code = pyotp.TOTP(setup.secret).at(_mid_step_time() + offset)
    assert len(engine.enable(account.id, code)) == 10
    assert memory_store.get_account(account.id).two_factor_enabled


@pytest.mark.parametrize("offset", [-120, 120])
def test_enable_rejects_codes_beyond_two_steps(engine, memory_store, account, offset):
    setup = engine.setup(account.id)
    code = pyotp.TOTP(setup.secret).at(_mid_step_time() + offset)
    with pytest.raises(ValidationError):
        engine.enable(account.id, code)
    assert not memory_store.get_account(account.id).two_factor_enabled


def test_second_factor_drift_window(engine, account):
    setup, _ = _enable(engine, account.id)
    totp = pyotp.TOTP(setup.secret)
    for offset in (-60, 60):
        code = totp.at(_mid_step_time() + offset)
        assert engine.verify_second_factor(account.id, code).method == "totp"
    for offset in (-120, 120):
        code = totp.at(_mid_step_time() + offset)
        assert engine.verify_second_factor(account.id, code) is None


def test_backup_code_is_single_use(engine, memory_store, account):
    _, codes = _enable(engine, account.id)
    first = engine.verify_second_factor(account.id, codes[0].lower())
    assert first.method == "backup_code"
    assert first.remaining_backup_codes == 9
    assert engine.verify_second_factor(account.id, codes[0]) is None
    assert len(memory_store.get_account(account.id).backup_code_hashes) == 9


def test_second_factor_rejects_garbage(engine, account):
    _enable(engine, account.id)
    assert engine.verify_second_factor(account.id, "not-a-code") is None
    assert engine.verify_second_factor(account.id, "") is None


def test_disable_requires_password(engine, memory_store, account):
    _enable(engine, account.id)
    with pytest.raises(AuthenticationError) as exc:
        engine.disable(account.id, "wrong")
    assert exc.value.status_code == 400
    engine.disable(account.id, "Account#Pass123")
    stored = memory_store.get_account(account.id)
    assert not stored.two_factor_enabled
    assert stored.two_factor_secret is None
    assert stored.backup_code_hashes == []


def test_regenerate_invalidates_old_codes(engine, account):
    _, old_codes = _enable(engine, account.id)
    new_codes = engine.regenerate_backup_codes(account.id, "Account#Pass123")
    assert engine.verify_second_factor(account.id, old_codes[1]) is None
    assert engine.verify_second_factor(account.id, new_codes[1]).method == "backup_code"


def test_totp_secret_encrypted_at_rest(engine, memory_store, account, tmp_path):
    setup, _ = _enable(engine, account.id)
    raw = (tmp_path / "state" / "memory_store.json").read_text()
    assert setup.secret not in raw
    reloaded = MemoryStore(fs_root=str(tmp_path), secret_key="unit-test-secret")
    assert reloaded.get_account(account.id).two_factor_secret == setup.secret
