"""Owner-scoped aggregation of recorded card analytics."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from ..store.base import RecordStore
from .cards import BUSINESS_CARDS

VALID_DAYS = (7, 30, 90, 365)
DEFAULT_DAYS = 30
TOP_REFERRERS = 10
RECENT_VIEWS = 20


@dataclass
class CardViews:
    card_id: str
    card_name: str
    slug: str
    views: int
    unique_visitors: int


@dataclass
class AnalyticsReport:
    """Aggregated views for all cards of one owner.

    Attributes:
        selected_days: Window length actually used
        total_views: Events in the window
        unique_visitors: Distinct anonymized addresses
        daily_views: (date, views) for every day in the window, oldest first
        card_views: Per-card totals, most viewed first
        top_referrers: Most common referrers ("Direct" when absent)
        recent_views: Newest events with their card name
    """

    selected_days: int
    total_views: int = 0
    unique_visitors: int = 0
    daily_views: list[dict[str, Any]] = field(default_factory=list)
    card_views: list[CardViews] = field(default_factory=list)
    top_referrers: list[dict[str, Any]] = field(default_factory=list)
    recent_views: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AnalyticsService:
    def __init__(self, store: RecordStore, table: str = "card_analytics") -> None:
        self.store = store
        self.table = table

    async def report(
        self,
        owner_id: str,
        days: int = DEFAULT_DAYS,
        now: datetime | None = None,
    ) -> AnalyticsReport:
        """Build the analytics report for an owner's cards.

        Args:
            owner_id: Card owner
            days: Window length; values outside VALID_DAYS fall back to 30
            now: Report end time (defaults to current UTC time)
        """
        selected = days if days in VALID_DAYS else DEFAULT_DAYS
        end = now or datetime.now(timezone.utc)
        start = end - timedelta(days=selected)

        cards = await self.store.select(BUSINESS_CARDS, owner_id=owner_id)
        report = AnalyticsReport(selected_days=selected)
        report.daily_views = [
            {"date": day.isoformat(), "views": 0} for day in _days_between(start.date(), end.date())
        ]
        if not cards:
            return report

        by_id = {c.record_id: c for c in cards}
        events = await self.store.select_events(
            self.table, list(by_id), since=start.isoformat()
        )
        events = [e for e in events if e["viewed_at"] <= end.isoformat()]

        report.total_views = len(events)
        report.unique_visitors = len({e["ip_address"] for e in events if e["ip_address"]})

        per_day = Counter(e["viewed_at"][:10] for e in events)
        for entry in report.daily_views:
            entry["views"] = per_day.get(entry["date"], 0)

        views: Counter = Counter()
        visitors: dict[str, set[str]] = defaultdict(set)
        for e in events:
            views[e["card_id"]] += 1
            if e["ip_address"]:
                visitors[e["card_id"]].add(e["ip_address"])

        report.card_views = sorted(
            (
                CardViews(
                    card_id=card_id,
                    card_name=by_id[card_id].payload.get("name", "Unknown Card"),
                    slug=by_id[card_id].payload.get("slug", ""),
                    views=count,
                    unique_visitors=len(visitors[card_id]),
                )
                for card_id, count in views.items()
            ),
            key=lambda c: c.views,
            reverse=True,
        )

        referrers = Counter(e["referrer"] or "Direct" for e in events)
        report.top_referrers = [
            {"referrer": referrer, "views": count}
            for referrer, count in referrers.most_common(TOP_REFERRERS)
        ]

        report.recent_views = [
            {
                "viewed_at": e["viewed_at"],
                "referrer": e["referrer"],
                "user_agent": e["user_agent"],
                "card_name": by_id[e["card_id"]].payload.get("name", "Unknown Card"),
            }
            for e in events[:RECENT_VIEWS]
        ]
        return report


def _days_between(first: date, last: date) -> list[date]:
    return [first + timedelta(days=i) for i in range((last - first).days + 1)]
