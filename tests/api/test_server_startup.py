import pytest
from fastapi.testclient import TestClient

from app import server


def test_startup_requires_openai_key_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "0")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ValueError) as exc:
        server.validate_startup_config()
    assert "OPENAI_API_KEY" in str(exc.value)


def test_startup_ok_in_test_mode():
    server.validate_startup_config()


def test_app_starts_and_answers(monkeypatch):
    calls = []
    monkeypatch.setattr(server.revision_service, "cleanup_zombie_runs", lambda: calls.append(1) or 0)
    with TestClient(server.app) as client:
        assert client.get("/").json() == {"message": "Revision API running"}
        assert client.get("/health").json() == {"status": "ok"}
    assert calls == [1]
