import logging
from datetime import datetime, tzinfo

from croniter import CroniterBadCronError, croniter

from scoutloop.errors import ConfigError
from scoutloop.models import Schedule, ScheduleState

log = logging.getLogger(__name__)


def compute_next_fire(cron: str, base: datetime, tz: tzinfo) -> datetime:
    """Return the first occurrence of *cron* strictly after *base*.

    The expression is evaluated in *tz*, so ``0 7 * * *`` means 07:00 local
    time across DST changes.
    """
    try:
        return croniter(cron, base.astimezone(tz)).get_next(datetime)
    except (CroniterBadCronError, ValueError, KeyError) as exc:
        raise ConfigError(f"Invalid cron expression {cron!r}: {exc}") from exc


def validate_cron(cron: str) -> None:
    if not croniter.is_valid(cron):
        raise ConfigError(f"Invalid cron expression {cron!r}")


def is_auto_disabled(state: ScheduleState) -> bool:
    return state.consecutive_errors >= state.max_consecutive_errors


class ScheduleTracker:
    """Next fire instant for one schedule."""

    def __init__(self, name: str, cron: str, tz: tzinfo, now: datetime) -> None:
        self.name = name
        self.cron = cron
        self.tz = tz
        self.next_fire = compute_next_fire(cron, now, tz)

    def is_due(self, now: datetime) -> bool:
        return now >= self.next_fire

    def advance(self, now: datetime) -> None:
        base = max(now, self.next_fire)
        self.next_fire = compute_next_fire(self.cron, base, self.tz)


def init_trackers(
    schedules: list[Schedule], tz: tzinfo, now: datetime
) -> list[ScheduleTracker]:
    trackers = []
    for schedule in schedules:
        if not schedule.enabled:
            continue
        try:
            trackers.append(ScheduleTracker(schedule.name, schedule.cron, tz, now))
        except ConfigError:
            log.exception("Skipping schedule %s", schedule.name)
    return trackers
