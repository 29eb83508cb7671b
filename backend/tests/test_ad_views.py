import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from monetization.config import settings
from monetization.database import to_iso, utcnow
from monetization.errors import NotFound, StateConflict, ValidationFailed
from monetization.services import ad_views, maintenance
from monetization.services.ad_views import ViewContext
from monetization.utils import atomic


BROWSER = ViewContext(ip_address="203.0.113.7", user_agent="Mozilla/5.0 (Macintosh) Safari/605.1.15")


def _wallet(db, user):
    return db.get("users", user["id"])["wallet_balance"]


def test_record_ad_view_credits_creator_once(db, viewer, creator, video):
    result = ad_views.record_ad_view(video["id"], viewer, BROWSER)

    assert result["totalRevenue"] == pytest.approx(0.1)
    assert result["creatorRevenue"] == pytest.approx(0.055)
    assert result["platformRevenue"] == pytest.approx(0.045)
    assert result["cpm"] == 100

    stored_creator = db.get("users", creator["id"])
    assert stored_creator["wallet_balance"] == pytest.approx(0.055)
    assert stored_creator["total_earnings"] == pytest.approx(0.055)

    [ad_view] = db.rows("ad_views")
    assert ad_view["id"] == result["adViewId"]
    assert ad_view["creator_share"] + ad_view["platform_share"] == pytest.approx(ad_view["ad_revenue_generated"])

    [earning] = db.rows("transactions", type="earning")
    assert earning["id"] == result["transactionId"]
    assert earning["ad_view_id"] == ad_view["id"]
    assert earning["status"] == "completed"

    [entry] = db.rows("audit_logs", ad_view_id=ad_view["id"])
    assert entry["status"] == "success"
    assert entry["transaction_id"] == earning["id"]

    [upload] = db.rows("video_uploads", video_id=video["id"])
    assert upload["total_views"] == 1
    assert upload["monetized_views"] == 1
    assert upload["total_revenue"] == pytest.approx(0.1)


def test_second_attempt_within_cooldown_is_rejected(db, viewer, creator, video):
    ad_views.record_ad_view(video["id"], viewer, BROWSER)
    balance = _wallet(db, creator)

    with pytest.raises(StateConflict) as exc:
        ad_views.record_ad_view(video["id"], viewer, BROWSER)

    assert exc.value.code == "cooldown_active"
    assert _wallet(db, creator) == balance
    assert len(db.rows("ad_views")) == 1
    assert len(db.rows("transactions")) == 1
    assert [row["failure_reason"] for row in db.rows("audit_logs", status="failed")] == ["cooldown_active"]


def test_next_window_credits_again(db, viewer, creator, video):
    past = utcnow() - timedelta(hours=25)
    session = db.add(
        "view_sessions",
        video_id=video["id"],
        viewer_id=viewer["id"],
        session_start=to_iso(past),
        last_ad_view=to_iso(past),
        ads_viewed_count=1,
        ad_shown=True,
        is_blocked=False,
    )

    ad_views.record_ad_view(video["id"], viewer, BROWSER)

    renewed = db.get("view_sessions", session["id"])
    assert renewed["ads_viewed_count"] == 2
    assert len(db.rows("view_sessions")) == 1
    assert _wallet(db, creator) == pytest.approx(0.055)


def test_premium_viewer_is_not_monetized(db, make_user, creator, video):
    premium = make_user(is_premium=True, premium_expiry_date=to_iso(utcnow() + timedelta(days=10)))

    with pytest.raises(StateConflict) as exc:
        ad_views.record_ad_view(video["id"], premium, BROWSER)

    assert exc.value.code == "premium_user"
    assert _wallet(db, creator) == 0
    assert db.rows("ad_views") == []


def test_lapsed_premium_viewer_sees_ads(db, make_user, creator, video):
    lapsed = make_user(is_premium=True, premium_expiry_date=to_iso(utcnow() - timedelta(days=1)))

    ad_views.record_ad_view(video["id"], lapsed, BROWSER)

    assert _wallet(db, creator) == pytest.approx(0.055)


def test_unmonetized_video_is_rejected(db, viewer, creator, make_video):
    plain = make_video(creator, is_monetized=False)

    with pytest.raises(StateConflict) as exc:
        ad_views.record_ad_view(plain["id"], viewer, BROWSER)

    assert exc.value.code == "not_monetized"
    assert db.rows("view_sessions") == []


def test_video_without_upload_data_is_rejected(db, viewer, creator, make_video):
    bare = make_video(creator, with_upload=False)

    with pytest.raises(StateConflict) as exc:
        ad_views.record_ad_view(bare["id"], viewer, BROWSER)

    assert exc.value.code == "no_video_data"
    assert _wallet(db, creator) == 0


def test_unknown_video(db, viewer):
    with pytest.raises(NotFound):
        ad_views.record_ad_view("missing-video", viewer, BROWSER)


def test_incomplete_ad_is_not_credited(db, viewer, creator, video):
    with pytest.raises(ValidationFailed) as exc:
        ad_views.record_ad_view(
            video["id"], viewer, ViewContext(ip_address="203.0.113.7", user_agent="Mozilla/5.0", ad_completed=False)
        )

    assert exc.value.code == "ad_not_completed"
    assert db.rows("ad_views") == []


def test_automation_agent_is_flagged_but_credited(db, viewer, creator, video):
    ad_views.record_ad_view(video["id"], viewer, ViewContext(ip_address="198.51.100.1", user_agent="HeadlessChrome"))

    [entry] = db.rows("audit_logs", event_type="ad_view")
    assert entry["status"] == "flagged"
    assert entry["risk_score"] == 60
    assert "automation_user_agent" in entry["risk_flags"]


def test_high_risk_request_blocks_session(db, make_user, creator, video, monkeypatch):
    monkeypatch.setattr(settings, "ip_hourly_ad_limit", 1)
    bot_context = ViewContext(ip_address="198.51.100.9", user_agent="python-requests/2.31")
    ad_views.record_ad_view(video["id"], make_user(), bot_context)
    balance = _wallet(db, creator)
    second_viewer = make_user()

    with pytest.raises(StateConflict) as exc:
        ad_views.record_ad_view(video["id"], second_viewer, bot_context)

    assert exc.value.code == "session_blocked"
    assert _wallet(db, creator) == balance
    [session] = db.rows("view_sessions", viewer_id=second_viewer["id"])
    assert session["is_blocked"] is True


def test_concurrent_requests_for_same_pair_credit_once(db, viewer, creator, video):
    def attempt(_):
        try:
            ad_views.record_ad_view(video["id"], viewer, BROWSER)
            return "ok"
        except StateConflict as exc:
            return exc.code

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(8)))

    assert outcomes.count("ok") == 1
    assert set(outcomes) - {"ok"} <= {"cooldown_active", "concurrent_update"}
    assert len(db.rows("ad_views")) == 1
    assert len(db.rows("transactions", type="earning")) == 1
    assert _wallet(db, creator) == pytest.approx(0.055)


def test_failed_ad_view_insert_releases_cooldown(db, viewer, creator, video):
    db.fail_next("ad_views", "insert")

    with pytest.raises(RuntimeError):
        ad_views.record_ad_view(video["id"], viewer, BROWSER)

    [session] = db.rows("view_sessions")
    assert session["last_ad_view"] is None
    assert _wallet(db, creator) == 0

    ad_views.record_ad_view(video["id"], viewer, BROWSER)
    assert _wallet(db, creator) == pytest.approx(0.055)


def test_partial_failure_is_reconciled(db, viewer, creator, video):
    db.fail_next("transactions", "insert")

    with pytest.raises(RuntimeError):
        ad_views.record_ad_view(video["id"], viewer, BROWSER)

    [ad_view] = db.rows("ad_views")
    [failed] = db.rows("audit_logs", ad_view_id=ad_view["id"])
    assert failed["failure_reason"] == "partial_failure:transaction"

    report = maintenance.run_maintenance()

    assert report["ad_views_flagged"] == 1
    flagged = db.rows("audit_logs", failure_reason="reconciliation_required")
    assert flagged[0]["metadata"]["missing"] == ["earning_transaction", "audit_entry"]
    assert ad_views.reconcile_orphan_ad_views() == 0


def test_start_view_reports_cooldown(db, viewer, creator, video):
    first = ad_views.start_view(video["id"], viewer, BROWSER)
    assert first["shouldShowAd"] is True
    assert first["revenuePerView"] == pytest.approx(0.1)

    ad_views.record_ad_view(video["id"], viewer, BROWSER)
    second = ad_views.start_view(video["id"], viewer, BROWSER)

    assert second["shouldShowAd"] is False
    assert second["reason"] == "Ad already shown in last 24 hours"


def test_track_watch_time(db, viewer, creator, video):
    result = ad_views.track_watch_time(video["id"], 1800)

    assert result == {"watchTimeAdded": 0.5}
    stored = db.get("users", creator["id"])
    assert stored["total_watch_hours"] == pytest.approx(0.5)
    assert stored["total_video_views"] == 1
    [upload] = db.rows("video_uploads", video_id=video["id"])
    assert upload["views"] == 1


def test_many_viewers_of_one_creator_are_all_credited(db, make_user, creator, video, monkeypatch):
    viewers = [make_user() for _ in range(20)]
    read_row = atomic.fetch_one

    def slow_read(*args, **kwargs):
        row = read_row(*args, **kwargs)
        time.sleep(0.01)
        return row

    monkeypatch.setattr(atomic, "fetch_one", slow_read)

    def attempt(index):
        context = ViewContext(ip_address=f"203.0.113.{index + 10}", user_agent=BROWSER.user_agent)
        ad_views.record_ad_view(video["id"], viewers[index], context)
        return "ok"

    with ThreadPoolExecutor(max_workers=20) as pool:
        outcomes = list(pool.map(attempt, range(20)))

    assert outcomes == ["ok"] * 20
    assert len(db.rows("ad_views")) == 20
    assert len(db.rows("transactions", type="earning")) == 20
    stored = db.get("users", creator["id"])
    assert stored["wallet_balance"] == pytest.approx(20 * 0.055)
    assert stored["total_earnings"] == pytest.approx(20 * 0.055)
    [upload] = db.rows("video_uploads", video_id=video["id"])
    assert upload["total_views"] == upload["monetized_views"] == 20
    assert upload["total_revenue"] == pytest.approx(2.0)


def test_audit_failure_after_credit_still_reports_success(db, viewer, creator, video):
    db.fail_next("audit_logs", "insert")

    result = ad_views.record_ad_view(video["id"], viewer, BROWSER)

    assert result["creatorRevenue"] == pytest.approx(0.055)
    assert _wallet(db, creator) == pytest.approx(0.055)
    assert len(db.rows("transactions", type="earning")) == 1

    assert ad_views.reconcile_orphan_ad_views() == 1
    [flagged] = db.rows("audit_logs", failure_reason="reconciliation_required")
    assert flagged["metadata"]["missing"] == ["audit_entry"]
