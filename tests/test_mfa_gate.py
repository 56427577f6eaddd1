import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from conftest import make_session_token
from authgate.core.settings import settings
from authgate.middlewares.mfa_gate import MfaGateMiddleware, path_matches, safe_next_path
from authgate.services.auth_state import (
    REASON_MFA_NOT_ENABLED,
    REASON_VERIFICATION_REQUIRED,
    AuthState,
)

HTML = {"Accept": "text/html,application/xhtml+xml"}

NEEDS_MFA = AuthState(True, True, "aal1", False, REASON_VERIFICATION_REQUIRED)
PASSES = AuthState(False, False, "aal1", False, REASON_MFA_NOT_ENABLED)


class _NullSession:
    async def __aenter__(self):
        return None

    async def __aexit__(self, *exc_info):
        return False


class StubResolver:
    def __init__(self, state: AuthState | None = None, error: Exception | None = None) -> None:
        self.state = state
        self.error = error
        self.calls: list[dict] = []

    async def resolve(self, db, identity_id, session_aal, *, device_cookie=None, context=None):
        self.calls.append({"identity_id": identity_id, "aal": session_aal, "device_cookie": device_cookie})
        if self.error is not None:
            raise self.error
        return self.state


def _build_client(resolver: StubResolver) -> TestClient:
    app = FastAPI()

    @app.get("/dashboard")
    async def dashboard(request: Request):
        return {"reason": request.state.auth_state.reason}

    @app.get("/api/v1/profile/secrets")
    async def secrets(request: Request):
        return {"reason": request.state.auth_state.reason}

    @app.post("/api/v1/mfa-verify")
    async def mfa_verify():
        return {"ok": True}

    @app.get("/mfa")
    async def challenge_page():
        return {"page": "challenge"}

    @app.get("/legal/terms")
    async def terms():
        return {"page": "terms"}

    app.add_middleware(
        MfaGateMiddleware,
        public_paths=["/", "/legal*"],
        challenge_path="/mfa",
        login_path="/auth",
        session_factory=_NullSession,
        resolver_factory=lambda: resolver,
    )
    return TestClient(app)


def _bearer(aal: str = "aal1") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_session_token('user-1', aal=aal)}"}


@pytest.mark.parametrize("path", ["/legal/terms", "/mfa", "/api/v1/mfa-verify"])
def test_allow_listed_paths_skip_the_gate(path):
    resolver = StubResolver(NEEDS_MFA)
    client = _build_client(resolver)

    response = client.request("POST" if path.endswith("verify") else "GET", path)

    assert response.status_code == 200
    assert resolver.calls == []


def test_preflight_requests_pass():
    client = _build_client(StubResolver(NEEDS_MFA))
    response = client.options("/api/v1/profile/secrets")
    assert response.status_code != 401
    assert response.status_code != 403


def test_anonymous_api_request_is_unauthorized():
    client = _build_client(StubResolver(PASSES))

    response = client.get("/api/v1/profile/secrets")

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"
    assert response.json()["code"] == "unauthorized"


def test_anonymous_browser_is_sent_to_login():
    client = _build_client(StubResolver(PASSES))

    response = client.get("/dashboard", headers=HTML, follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/auth"


def test_invalid_token_is_unauthorized():
    client = _build_client(StubResolver(PASSES))
    token = make_session_token("user-1", secret="some-other-secret-entirely-0000000")

    response = client.get("/api/v1/profile/secrets", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_pending_mfa_api_request_gets_403_with_redirect():
    client = _build_client(StubResolver(NEEDS_MFA))

    response = client.get("/api/v1/profile/secrets", headers=_bearer())

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "mfa_required"
    assert body["details"]["redirect_to"] == "/mfa?next=%2Fapi%2Fv1%2Fprofile%2Fsecrets"


def test_pending_mfa_browser_is_redirected_with_next():
    client = _build_client(StubResolver(NEEDS_MFA))

    response = client.get("/dashboard?tab=loans", headers={**HTML, **_bearer()}, follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/mfa?next=%2Fdashboard%3Ftab%3Dloans"


def test_resolved_request_passes_with_state():
    resolver = StubResolver(PASSES)
    client = _build_client(resolver)

    response = client.get("/api/v1/profile/secrets", headers=_bearer())

    assert response.status_code == 200
    assert response.json() == {"reason": REASON_MFA_NOT_ENABLED}
    assert resolver.calls[0]["identity_id"] == "user-1"
    assert resolver.calls[0]["aal"] == "aal1"


def test_session_cookie_and_device_cookie_are_read():
    resolver = StubResolver(PASSES)
    client = _build_client(resolver)
    client.cookies.set(settings.session_cookie_name, make_session_token("user-1"))
    client.cookies.set(settings.trusted_device_cookie_name, "device.signature")

    response = client.get("/dashboard")

    assert response.status_code == 200
    assert resolver.calls[0]["device_cookie"] == "device.signature"


def test_resolver_failure_fails_closed():
    client = _build_client(StubResolver(error=RuntimeError("database down")))

    response = client.get("/api/v1/profile/secrets", headers=_bearer())

    assert response.status_code == 403
    assert response.json()["code"] == "mfa_required"


def test_missing_signing_secret_is_a_server_error(monkeypatch):
    client = _build_client(StubResolver(PASSES))
    headers = _bearer()
    monkeypatch.setattr(settings, "session_jwt_secret", "")

    response = client.get("/api/v1/profile/secrets", headers=headers)

    assert response.status_code == 500
    assert response.json()["code"] == "config_error"


@pytest.mark.parametrize(
    ("path", "query", "expected"),
    [
        ("/dashboard", "", "/dashboard"),
        ("/dashboard", "a=1", "/dashboard?a=1"),
        ("//evil.example", "", "/"),
        ("/\\evil.example", "", "/"),
    ],
)
def test_safe_next_path(path, query, expected):
    assert safe_next_path(path, query) == expected


def test_path_matches():
    patterns = ["/", "/legal*", "/mfa"]
    assert path_matches("/", patterns)
    assert path_matches("/legal/privacy", patterns)
    assert path_matches("/mfa/", patterns)
    assert not path_matches("/mfa-settings", patterns)
    assert not path_matches("/dashboard", patterns)
