"""Tests for login anomaly detection."""

from datetime import datetime, timedelta, timezone

import pytest

from sessionguard.service.anomaly import (
    ADMIN_THRESHOLDS,
    ELEVATED_THRESHOLDS,
    STANDARD_THRESHOLDS,
    AnomalyDetector,
    last_ip_key,
)
from sessionguard.service.audit import AuditLog
from sessionguard.storage.models import LoginRecord

DAYTIME = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)


def _ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


async def _seed_history(store, key: str, moments) -> None:
    # Oldest first so the newest ends up at the head
    for moment in moments:
        await store.list_push(key, LoginRecord(type="login", timestamp=_ms(moment)).to_json())


@pytest.mark.asyncio
async def test_login_at_3am_is_flagged(detector, audit):
    night = DAYTIME.replace(hour=3)
    emitted = await detector.detect(1, "alice", now=night)
    assert emitted == ["unusual_login_time"]
    events = await audit.recent(1)
    assert events[0].event_type == "unusual_login_time"
    assert events[0].severity == "medium"
    assert events[0].details["hour"] == 3


@pytest.mark.asyncio
async def test_daytime_login_is_not_flagged(detector, audit):
    assert await detector.detect(1, "alice", now=DAYTIME) == []
    assert await audit.recent(1) == []


@pytest.mark.parametrize(
    "hour,thresholds,flagged",
    [
        (5, STANDARD_THRESHOLDS, True),
        (6, STANDARD_THRESHOLDS, False),
        (21, STANDARD_THRESHOLDS, False),
        (22, STANDARD_THRESHOLDS, True),
        (4, ELEVATED_THRESHOLDS, True),
        (5, ELEVATED_THRESHOLDS, False),
        (22, ELEVATED_THRESHOLDS, False),
        (23, ELEVATED_THRESHOLDS, True),
    ],
)
@pytest.mark.asyncio
async def test_working_hour_boundaries(detector, hour, thresholds, flagged):
    emitted = await detector.detect(1, "alice", now=DAYTIME.replace(hour=hour), thresholds=thresholds)
    assert (thresholds.off_hours_event in emitted) is flagged


@pytest.mark.asyncio
async def test_local_timezone_is_applied(store, settings):
    tokyo = settings.model_copy(update={"local_timezone": "Asia/Tokyo"})
    detector = AnomalyDetector(store, AuditLog(store, tokyo), tokyo)
    # 14:00 UTC is 23:00 in Tokyo
    assert await detector.detect(1, "alice", now=DAYTIME) == ["unusual_login_time"]


@pytest.mark.asyncio
async def test_burst_within_window_is_flagged(detector, store, audit):
    start = DAYTIME
    await _seed_history(
        store,
        "login_history:1",
        [start, start + timedelta(seconds=60), start + timedelta(seconds=120)],
    )
    emitted = await detector.detect(1, "alice", now=start + timedelta(seconds=150))
    assert emitted == ["frequent_login_attempts"]
    event = (await audit.recent(1))[0]
    assert event.details == {"attempts": 3, "timeWindow": "5 minutes"}


@pytest.mark.asyncio
async def test_burst_outside_window_is_not_flagged(detector, store):
    start = DAYTIME
    await _seed_history(
        store,
        "login_history:1",
        [start, start + timedelta(seconds=60), start + timedelta(seconds=120)],
    )
    assert await detector.detect(1, "alice", now=start + timedelta(minutes=10)) == []


@pytest.mark.asyncio
async def test_burst_needs_minimum_entries(detector, store):
    await _seed_history(store, "login_history:1", [DAYTIME, DAYTIME + timedelta(seconds=1)])
    assert await detector.detect(1, "alice", now=DAYTIME + timedelta(seconds=2)) == []


@pytest.mark.asyncio
async def test_burst_uses_oldest_sampled_entry(detector, store):
    # Six entries: the sample covers only the newest five
    old = DAYTIME - timedelta(hours=1)
    recent = [DAYTIME + timedelta(seconds=i) for i in range(5)]
    await _seed_history(store, "login_history:1", [old] + recent)
    emitted = await detector.detect(1, "alice", now=DAYTIME + timedelta(seconds=10))
    assert emitted == ["frequent_login_attempts"]


@pytest.mark.asyncio
async def test_elevated_burst_reads_admin_history(detector, store):
    moments = [DAYTIME + timedelta(minutes=i) for i in range(5)]
    await _seed_history(store, "admin_login_history:1", moments)
    emitted = await detector.detect(
        1, "root", now=DAYTIME + timedelta(minutes=30), thresholds=ADMIN_THRESHOLDS
    )
    assert emitted == ["admin_frequent_login"]


@pytest.mark.asyncio
async def test_elevated_passes_emit_base_and_admin_events(detector, audit):
    passes = (ELEVATED_THRESHOLDS, ADMIN_THRESHOLDS)
    emitted = await detector.detect(1, "root", now=DAYTIME.replace(hour=3), thresholds=passes)
    assert emitted == ["unusual_login_time", "admin_unusual_login_time"]
    severities = {event.event_type: event.severity for event in await audit.recent(1)}
    assert severities == {"unusual_login_time": "medium", "admin_unusual_login_time": "low"}

    assert await detector.detect(2, "root", now=DAYTIME.replace(hour=22), thresholds=passes) == []


@pytest.mark.asyncio
async def test_elevated_passes_include_standard_burst(detector, store):
    moments = [DAYTIME + timedelta(seconds=i) for i in range(5)]
    await _seed_history(store, "login_history:1", moments)
    emitted = await detector.detect(
        1,
        "root",
        now=DAYTIME + timedelta(seconds=10),
        thresholds=(ELEVATED_THRESHOLDS, ADMIN_THRESHOLDS),
    )
    assert emitted == ["frequent_login_attempts"]


@pytest.mark.asyncio
async def test_admin_pass_skips_ip_comparison(detector, store):
    await store.set(last_ip_key(1), "10.0.0.1")
    emitted = await detector.detect(
        1, "root", {"ip": "10.0.0.2"}, now=DAYTIME, thresholds=ADMIN_THRESHOLDS
    )
    assert emitted == []


@pytest.mark.asyncio
async def test_ip_change_is_flagged(detector, store, audit):
    await store.set(last_ip_key(1), "10.0.0.1")
    emitted = await detector.detect(1, "alice", {"ip": "10.0.0.2"}, now=DAYTIME)
    assert emitted == ["ip_address_change"]
    event = (await audit.recent(1))[0]
    assert event.details == {"previousIP": "10.0.0.1", "currentIP": "10.0.0.2"}


@pytest.mark.asyncio
async def test_same_or_unknown_ip_is_not_flagged(detector, store):
    await store.set(last_ip_key(1), "10.0.0.1")
    assert await detector.detect(1, "alice", {"ip": "10.0.0.1"}, now=DAYTIME) == []
    assert await detector.detect(1, "alice", {}, now=DAYTIME) == []
    assert await detector.detect(2, "bob", {"ip": "10.0.0.9"}, now=DAYTIME) == []


@pytest.mark.asyncio
async def test_explicit_previous_ip_wins_over_stored(detector, store):
    await store.set(last_ip_key(1), "10.0.0.2")
    emitted = await detector.detect(
        1, "alice", {"ip": "10.0.0.2"}, now=DAYTIME, previous_ip="10.0.0.1"
    )
    assert emitted == ["ip_address_change"]


@pytest.mark.asyncio
async def test_outage_never_raises(failing_store, settings):
    detector = AnomalyDetector(failing_store, AuditLog(failing_store, settings), settings)
    emitted = await detector.detect(1, "alice", {"ip": "10.0.0.1"}, now=DAYTIME.replace(hour=3))
    assert emitted == []
