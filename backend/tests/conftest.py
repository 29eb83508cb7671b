from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from fake_supabase import FakeSupabase
from monetization import database
from monetization.config import settings
from monetization.database import to_iso, utcnow
from monetization.main import app
from monetization.routes.auth import create_access_token
from monetization.services.payment_provider import get_payment_provider
from monetization.utils import anti_bot


BROWSER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Keep configuration and in-memory risk state isolated between tests."""
    monkeypatch.setattr(settings, "jwt_secret", "test-secret")
    monkeypatch.setattr(settings, "scheduler_enabled", False)
    monkeypatch.setattr(settings, "razorpay_key_id", "")
    monkeypatch.setattr(settings, "razorpay_key_secret", "")
    get_payment_provider.cache_clear()
    anti_bot.reset()
    yield
    anti_bot.reset()
    get_payment_provider.cache_clear()


@pytest.fixture
def db(monkeypatch):
    fake = FakeSupabase()
    monkeypatch.setattr(database, "_build_client", lambda: fake)
    return fake


@pytest.fixture
def client(db):
    return TestClient(app)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        values = {
            "email": f"user{counter['n']}@example.com",
            "name": f"User {counter['n']}",
            "role": "viewer",
        }
        values.update(overrides)
        return db.add("users", **values)

    return _make


@pytest.fixture
def viewer(make_user):
    return make_user(role="viewer")


@pytest.fixture
def creator(make_user):
    return make_user(
        role="creator",
        has_channel=True,
        bank_account_number="123456789012",
        bank_account_holder_name="Asha Rao",
        bank_ifsc_code="HDFC0001234",
        bank_name="HDFC Bank",
    )


@pytest.fixture
def admin(make_user):
    return make_user(role="admin")


@pytest.fixture
def make_video(db):
    def _make(creator, cpm=100, is_monetized=True, with_upload=True, **overrides):
        video = db.add(
            "videos", creator_id=creator["id"], title="Launch day", cpm=cpm, is_monetized=is_monetized, **overrides
        )
        if with_upload:
            db.add(
                "video_uploads",
                video_id=video["id"],
                title="Launch day",
                thumbnail_url="https://cdn.example.com/thumb.jpg",
                created_at=to_iso(utcnow() - timedelta(days=3)),
            )
        return video

    return _make


@pytest.fixture
def video(creator, make_video):
    return make_video(creator)


@pytest.fixture
def auth_headers():
    def _headers(user, **extra):
        return {"Authorization": f"Bearer {create_access_token(user['id'])}", "User-Agent": BROWSER_AGENT, **extra}

    return _headers
