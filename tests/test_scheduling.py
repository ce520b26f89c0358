from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from scoutloop.errors import ConfigError
from scoutloop.models import Schedule, ScheduleState
from scoutloop.scheduling import (
    ScheduleTracker,
    compute_next_fire,
    init_trackers,
    is_auto_disabled,
    validate_cron,
)

ZURICH = ZoneInfo("Europe/Zurich")


def test_next_fire_is_in_local_time() -> None:
    base = datetime(2026, 1, 5, 5, 0, tzinfo=timezone.utc)  # 06:00 in Zurich

    fire = compute_next_fire("0 7 * * *", base, ZURICH)

    assert fire == datetime(2026, 1, 5, 7, 0, tzinfo=ZURICH)
    assert fire.astimezone(timezone.utc).hour == 6


def test_next_fire_is_strictly_after_base() -> None:
    base = datetime(2026, 1, 5, 7, 0, tzinfo=ZURICH)

    assert compute_next_fire("0 7 * * *", base, ZURICH) == datetime(
        2026, 1, 6, 7, 0, tzinfo=ZURICH
    )


def test_next_fire_across_dst_change() -> None:
    # Zurich switches to CEST on 2026-03-29
    base = datetime(2026, 3, 28, 8, 0, tzinfo=ZURICH)

    fire = compute_next_fire("0 7 * * *", base, ZURICH)

    assert (fire.month, fire.day, fire.hour) == (3, 29, 7)
    assert fire.astimezone(timezone.utc).hour == 5


def test_invalid_cron_raises_config_error() -> None:
    with pytest.raises(ConfigError):
        compute_next_fire("not a cron", datetime.now(timezone.utc), ZURICH)
    with pytest.raises(ConfigError):
        validate_cron("61 * * * *")


def test_validate_cron_accepts_valid() -> None:
    validate_cron("*/15 8-18 * * 1-5")


def test_tracker_is_due_and_advances() -> None:
    now = datetime(2026, 1, 5, 6, 30, tzinfo=ZURICH)
    tracker = ScheduleTracker("news", "0 7 * * *", ZURICH, now)

    assert not tracker.is_due(now)
    later = datetime(2026, 1, 5, 7, 0, 20, tzinfo=ZURICH)
    assert tracker.is_due(later)

    tracker.advance(later)

    assert tracker.next_fire == datetime(2026, 1, 6, 7, 0, tzinfo=ZURICH)
    assert not tracker.is_due(later)


def test_tracker_skips_missed_occurrences() -> None:
    now = datetime(2026, 1, 5, 6, 0, tzinfo=ZURICH)
    tracker = ScheduleTracker("hourly", "0 * * * *", ZURICH, now)

    # three hours of downtime fire at most once
    late = now + timedelta(hours=3, minutes=5)
    assert tracker.is_due(late)
    tracker.advance(late)

    assert tracker.next_fire == datetime(2026, 1, 5, 10, 0, tzinfo=ZURICH)


def test_is_auto_disabled() -> None:
    assert not is_auto_disabled(ScheduleState(consecutive_errors=4))
    assert is_auto_disabled(ScheduleState(consecutive_errors=5))
    assert is_auto_disabled(ScheduleState(consecutive_errors=1, max_consecutive_errors=1))


def test_init_trackers_skips_disabled_and_invalid() -> None:
    now = datetime(2026, 1, 5, 6, 0, tzinfo=ZURICH)
    schedules = [
        Schedule(name="ok", cron="0 7 * * *"),
        Schedule(name="off", cron="0 7 * * *", enabled=False),
        Schedule(name="broken", cron="whenever"),
    ]

    trackers = init_trackers(schedules, ZURICH, now)

    assert [t.name for t in trackers] == ["ok"]
