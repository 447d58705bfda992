"""Application entrypoint tests."""

from pathlib import Path

from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from app import main
from app.core.config import settings
from app.db import session as db_session


def test_health(tmp_path: Path, monkeypatch) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'test_health.db'}", connect_args={"check_same_thread": False})
    monkeypatch.setattr(db_session, "engine", engine)

    with TestClient(main.app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_run_serves_app_with_uvicorn(monkeypatch) -> None:
    calls: list[tuple[tuple, dict]] = []
    monkeypatch.setattr(main.uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))
    monkeypatch.setattr(settings, "port", 8123)
    monkeypatch.setattr(settings, "log_level", "WARNING")

    main.run()

    assert calls == [(("app.main:app",), {"host": settings.host, "port": 8123, "log_level": "warning"})]
