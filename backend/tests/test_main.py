from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from ladder.exceptions import RecalculationFailed, RecalculationInProgress
from ladder.time_utils import utcnow
from ladder.utils import sentry


def test_app_serves_health_and_versioned_routes():
    from ladder.main import app

    with TestClient(app) as client:
        assert client.get("/healthz").json() == {"status": "ok"}
        assert client.get("/api/healthz").json() == {"status": "ok"}

        resp = client.post(
            "/api/v0/ratings/preview",
            json={"rating": 1500, "opponentRating": 1500, "matchesPlayed": 45},
        )
        assert resp.status_code == 200
        assert resp.json()["kFactor"] == 24.0
        assert resp.json()["win"] == 12.0

        resp = client.get("/api/v0/sessions/s1/recalc-status")
        assert resp.status_code == 401


def test_sentry_skipped_without_dsn(monkeypatch):
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    assert sentry.init_sentry() is False


def test_sample_rate_parsing(monkeypatch):
    monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "0.25")
    assert sentry._parse_sample_rate("SENTRY_TRACES_SAMPLE_RATE") == 0.25
    monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "lots")
    assert sentry._parse_sample_rate("SENTRY_TRACES_SAMPLE_RATE", 0.1) == 0.1
    monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "3")
    assert sentry._parse_sample_rate("SENTRY_TRACES_SAMPLE_RATE") == 0.0


def test_client_errors_are_not_reported():
    event = {"message": "boom"}

    conflict = RecalculationInProgress("s1")
    hint = {"exc_info": (type(conflict), conflict, None)}
    assert sentry.drop_client_errors(event, hint) is None

    failure = RecalculationFailed("replay failed")
    hint = {"exc_info": (type(failure), failure, None)}
    assert sentry.drop_client_errors(event, hint) is event

    assert sentry.drop_client_errors(event, {}) is event


def test_utcnow_is_naive_utc():
    before = datetime.now(timezone.utc).replace(tzinfo=None)
    now = utcnow()
    assert now.tzinfo is None
    assert before <= now <= before + timedelta(seconds=5)
