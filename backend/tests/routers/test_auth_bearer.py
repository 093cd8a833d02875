from datetime import timedelta
from typing import Any, AsyncIterator

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from trekbook.config import get_settings
from trekbook.deps import get_admin_role, get_current_user_id, get_session
from trekbook.models import UserRole
from trekbook.utils.auth import create_access_token


class DummySession:
    """Answers the user lookup with a user id and the role lookup with ``role``."""

    def __init__(self, user_exists: bool, role: UserRole = UserRole.USER) -> None:
        self.user_exists = user_exists
        self.role = role
        self.calls = 0

    async def scalar(self, *args: Any, **kwargs: Any) -> Any:
        self.calls += 1
        if self.calls == 1:
            return 123 if self.user_exists else None
        return self.role

    async def rollback(self) -> None:
        return None


def _make_app(user_exists: bool, role: UserRole = UserRole.USER) -> TestClient:
    app = FastAPI()

    async def override_get_session() -> AsyncIterator[DummySession]:
        yield DummySession(user_exists=user_exists, role=role)

    app.dependency_overrides[get_session] = override_get_session

    @app.get("/protected")
    async def protected(user_id: int = Depends(get_current_user_id)) -> dict[str, int]:
        return {"user_id": user_id}

    @app.get("/admin-only")
    async def admin_only(role: UserRole = Depends(get_admin_role)) -> dict[str, str]:
        return {"role": role.value}

    return TestClient(app)


def _token(secret: str, *, expired: bool = False) -> str:
    delta = timedelta(seconds=-1) if expired else timedelta(minutes=30)
    return create_access_token(user_id=123, secret=secret, expires_delta=delta)


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def _auth_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTH_SECRET", "testsecret")
    get_settings.cache_clear()


def test_protected_accepts_valid_token() -> None:
    client = _make_app(user_exists=True)
    res = client.get("/protected", headers=_auth(_token("testsecret")))
    assert res.status_code == 200
    assert res.json()["user_id"] == 123


def test_protected_rejects_missing_header() -> None:
    client = _make_app(user_exists=True)
    res = client.get("/protected")
    assert res.status_code == 401
    assert res.headers.get("www-authenticate", "").lower().startswith("bearer")


def test_protected_rejects_token_signed_with_other_secret() -> None:
    client = _make_app(user_exists=True)
    res = client.get("/protected", headers=_auth(_token("othersecret")))
    assert res.status_code == 401


def test_protected_rejects_expired_token() -> None:
    client = _make_app(user_exists=True)
    res = client.get("/protected", headers=_auth(_token("testsecret", expired=True)))
    assert res.status_code == 401


def test_protected_rejects_when_user_not_found() -> None:
    client = _make_app(user_exists=False)
    res = client.get("/protected", headers=_auth(_token("testsecret")))
    assert res.status_code == 401


def test_admin_route_forbidden_for_regular_user() -> None:
    client = _make_app(user_exists=True, role=UserRole.USER)
    res = client.get("/admin-only", headers=_auth(_token("testsecret")))
    assert res.status_code == 403


def test_admin_route_allows_admin() -> None:
    client = _make_app(user_exists=True, role=UserRole.ADMIN)
    res = client.get("/admin-only", headers=_auth(_token("testsecret")))
    assert res.status_code == 200
    assert res.json() == {"role": "admin"}
