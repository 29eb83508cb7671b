from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Deque

from ..config import settings


AUTOMATION_AGENT_MARKERS = ("bot", "crawler", "spider", "headless", "curl", "python-requests", "wget")

ip_ad_events: defaultdict[str, Deque[datetime]] = defaultdict(deque)


@dataclass
class RiskAssessment:
    score: int = 0
    flags: list[str] = field(default_factory=list)

    @property
    def flagged(self) -> bool:
        return self.score >= settings.risk_flag_threshold

    @property
    def blocked(self) -> bool:
        return self.score >= settings.risk_block_threshold

    def add(self, flag: str, points: int) -> None:
        self.flags.append(flag)
        self.score = min(100, self.score + points)


def _trim_old(events: Deque[datetime], now: datetime, window: timedelta) -> None:
    while events and now - events[0] > window:
        events.popleft()


def assess_user_agent(user_agent: str | None) -> RiskAssessment:
    assessment = RiskAssessment()
    agent = (user_agent or "").strip().lower()
    if not agent:
        assessment.add("missing_user_agent", 30)
    elif any(marker in agent for marker in AUTOMATION_AGENT_MARKERS):
        assessment.add("automation_user_agent", 60)
    return assessment


def assess_ad_request(
    ip_address: str | None,
    user_agent: str | None,
    now: datetime | None = None,
) -> RiskAssessment:
    """Score an ad impression attempt from its client fingerprint.

    The IP check is a sliding one-hour window kept in process memory.
    """
    now = now or datetime.now(timezone.utc)
    assessment = assess_user_agent(user_agent)

    if ip_address:
        ip_log = ip_ad_events[ip_address]
        _trim_old(ip_log, now, timedelta(hours=1))
        if len(ip_log) >= settings.ip_hourly_ad_limit:
            assessment.add("ip_rate_limited", 40)
        ip_log.append(now)

    return assessment


def reset() -> None:
    ip_ad_events.clear()
