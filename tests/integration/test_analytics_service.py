"""
Integration tests for the analytics report.
"""

from datetime import datetime, timedelta, timezone

import pytest

from bizcard.cardcore.services.analytics import AnalyticsService
from bizcard.cardcore.services.cards import BUSINESS_CARDS
from bizcard.cardcore.store.memory import InMemoryRecordStore

OWNER = "user:alice"
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def at(days_ago: float) -> str:
    return (NOW - timedelta(days=days_ago)).isoformat()


class TestAnalyticsService:
    """Tests for AnalyticsService.report."""

    @pytest.fixture
    async def store(self):
        store = InMemoryRecordStore()
        await store.connect()
        yield store
        await store.close()

    @pytest.fixture
    def analytics(self, store):
        return AnalyticsService(store)

    @pytest.fixture
    async def cards(self, store):
        work = await store.insert(BUSINESS_CARDS, OWNER, {"name": "Work", "slug": "work"})
        home = await store.insert(BUSINESS_CARDS, OWNER, {"name": "Home", "slug": "home"})
        other = await store.insert(BUSINESS_CARDS, "user:bob", {"name": "Bob", "slug": "bob"})
        await store.with_service_role().batch_insert(
            "card_analytics",
            [
                {"card_id": work.record_id, "ip_address": "10.0.0.0", "referrer": None,
                 "user_agent": "UA", "viewed_at": at(0.5)},
                {"card_id": work.record_id, "ip_address": "10.0.0.0", "referrer": "https://t.co",
                 "user_agent": "UA", "viewed_at": at(1)},
                {"card_id": work.record_id, "ip_address": "10.0.1.0", "referrer": None,
                 "user_agent": "UA", "viewed_at": at(2)},
                {"card_id": home.record_id, "ip_address": "10.0.2.0", "referrer": "vcard-download",
                 "user_agent": "UA", "viewed_at": at(3)},
                {"card_id": home.record_id, "ip_address": "10.0.2.0", "referrer": None,
                 "user_agent": "UA", "viewed_at": at(20)},
                {"card_id": other.record_id, "ip_address": "10.9.9.0", "referrer": None,
                 "user_agent": "UA", "viewed_at": at(1)},
            ],
        )
        return {"work": work, "home": home}

    @pytest.mark.asyncio
    async def test_seven_day_report(self, analytics, cards):
        report = await analytics.report(OWNER, days=7, now=NOW)

        assert report.selected_days == 7
        assert report.total_views == 4
        assert report.unique_visitors == 3
        assert [c.card_name for c in report.card_views] == ["Work", "Home"]
        assert [(c.views, c.unique_visitors) for c in report.card_views] == [(3, 2), (1, 1)]
        assert report.top_referrers[0] == {"referrer": "Direct", "views": 2}
        assert [v["viewed_at"] for v in report.recent_views] == [at(0.5), at(1), at(2), at(3)]

    @pytest.mark.asyncio
    async def test_daily_views_are_zero_filled(self, analytics, cards):
        report = await analytics.report(OWNER, days=7, now=NOW)

        days = [d["date"] for d in report.daily_views]
        assert days[0] == "2026-03-03"
        assert days[-1] == "2026-03-10"
        assert days == sorted(days)
        assert len(days) == 8
        by_day = {d["date"]: d["views"] for d in report.daily_views}
        assert by_day["2026-03-10"] == 1
        assert by_day["2026-03-09"] == 1
        assert by_day["2026-03-05"] == 0
        assert sum(by_day.values()) == report.total_views

    @pytest.mark.asyncio
    async def test_wider_window_includes_older_events(self, analytics, cards):
        report = await analytics.report(OWNER, days=30, now=NOW)

        assert report.total_views == 5

    @pytest.mark.asyncio
    async def test_unsupported_window_falls_back_to_30(self, analytics, cards):
        report = await analytics.report(OWNER, days=14, now=NOW)

        assert report.selected_days == 30
        assert report.total_views == 5

    @pytest.mark.asyncio
    async def test_owner_without_cards(self, analytics):
        report = await analytics.report("user:nobody", days=7, now=NOW)

        assert report.total_views == 0
        assert report.card_views == []
        assert all(d["views"] == 0 for d in report.daily_views)

    @pytest.mark.asyncio
    async def test_to_dict(self, analytics, cards):
        data = (await analytics.report(OWNER, days=7, now=NOW)).to_dict()

        assert data["card_views"][0]["slug"] == "work"
        assert set(data) >= {"total_views", "unique_visitors", "daily_views", "top_referrers"}
