import asyncio
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="storefront_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SECURE_COOKIES", "false")
os.environ.setdefault("ADMIN_EMAIL", "admin@example.com")
# Rate limits and challenges stay in-process so tests never share Redis state
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from storefront.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh state directory per test; the memory store reloads whatever it finds
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


DEFAULT_PASSWORD = "Shopper#Pass123"


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from storefront import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def outbox(monkeypatch):
    """Capture outgoing email instead of delivering it."""
    from storefront.service.runtime import get_runtime

    sent = []

    def _send(template, recipient, data):
        sent.append({"template": template, "to": recipient, "data": dict(data or {})})
        return True

    monkeypatch.setattr(get_runtime().email, "send", _send)
    return sent


def last_token(outbox, template, recipient):
    for message in reversed(outbox):
        if message["template"] == template and message["to"] == recipient:
            return message["data"]["token"]
    raise AssertionError(f"no {template} email sent to {recipient}")


@pytest.fixture
def make_account(client, outbox):
    """Sign up, verify and log in through the API; returns session headers."""

    def _make(email, password=DEFAULT_PASSWORD, *, name=None, login=True):
        resp = client.post(
            "/v1/auth/signup", json={"email": email, "password": password, "name": name}
        )
        assert resp.status_code == 201, resp.text
        account_id = resp.json()["data"]["account"]["id"]
        token = last_token(outbox, "email_verification", email)
        assert client.get(f"/v1/auth/verify-email/{token}").status_code == 200
        result = {"account_id": account_id, "email": email, "password": password}
        if login:
            resp = client.post("/v1/auth/login", json={"email": email, "password": password})
            assert resp.status_code == 200, resp.text
            session_id = resp.json()["data"]["session_id"]
            # later logins would otherwise rotate this session away via the cookie
            client.cookies.clear()
            result["session_id"] = session_id
            result["headers"] = {"session_id": session_id}
        return result

    return _make


class FakeKhalti:
    """Scriptable stand-in for the Khalti ePayment API (an httpx mock handler)."""

    def __init__(self):
        self.requests = []
        self.lookup_status = "Completed"
        self.fail_initiate = False
        self.last_amount = None
        self._counter = 0

    def __call__(self, request):
        import httpx

        body = json.loads(request.content or b"{}")
        self.requests.append((request.url.path, body, request.headers.get("Authorization")))
        if request.url.path.endswith("/epayment/initiate/"):
            if self.fail_initiate:
                return httpx.Response(401, json={"detail": "Invalid token."})
            self._counter += 1
            self.last_amount = body["amount"]
            return httpx.Response(
                200,
                json={
                    "pidx": f"pidx-{self._counter}",
                    "payment_url": f"https://pay.khalti.test/?pidx=pidx-{self._counter}",
                    "expires_at": "2030-01-01T00:00:00+05:45",
                },
            )
        if request.url.path.endswith("/epayment/lookup/"):
            return httpx.Response(
                200,
                json={
                    "pidx": body["pidx"],
                    "status": self.lookup_status,
                    "total_amount": self.last_amount,
                    "transaction_id": "txn-1",
                },
            )
        return httpx.Response(404)


@pytest.fixture
def khalti(monkeypatch):
    """Point the runtime's gateway client at a FakeKhalti."""
    import httpx

    from storefront.service.runtime import get_runtime

    fake = FakeKhalti()
    gateway = get_runtime().gateway
    monkeypatch.setattr(gateway, "secret_key", "test_secret_key")
    monkeypatch.setattr(gateway, "_transport", httpx.MockTransport(fake))
    return fake
