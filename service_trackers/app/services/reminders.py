"""
Tracker reminders.

``ReminderService`` manages reminder rows. ``ReminderEvaluator`` answers
"should this reminder fire now?" for the periodic batch job, and
``ReminderDispatcher`` applies the per-owner daily cap across a batch.
"""

import re
from dataclasses import dataclass
from datetime import datetime, time
from typing import Any, Dict, List, Mapping, Optional

from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.logging import get_logger

from ..domain.models import (
    QuietHours,
    ReminderKind,
    ReminderSchedule,
    TrackerReminder,
    new_id,
    utc_now,
)
from ..permissions.enforcement import Enforcer
from ..permissions.resolver import PermissionResolver
from ..store.base import TrackerRepository

DELIVERY_CHANNELS = ("in_app", "push")
WEEKDAY_TOKENS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
DAY_TOKENS = ("daily", "weekdays", "weekends") + WEEKDAY_TOKENS

_TIME_PATTERN = re.compile(r"([01][0-9]|2[0-3]):[0-5][0-9]")


@dataclass
class ReminderPolicy:
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "07:00"
    schedule_window_minutes: int = 5
    daily_cap_per_owner: int = 3

    @classmethod
    def from_config(cls, config) -> "ReminderPolicy":
        return cls(
            quiet_hours_start=config.reminder_quiet_hours_start,
            quiet_hours_end=config.reminder_quiet_hours_end,
            schedule_window_minutes=config.reminder_schedule_window_minutes,
            daily_cap_per_owner=config.reminder_daily_cap_per_owner,
        )


@dataclass
class ReminderDecision:
    should_fire: bool
    reason: str


def parse_time(value: Any, what: str) -> time:
    if not isinstance(value, str) or not _TIME_PATTERN.fullmatch(value):
        raise ValidationError(f"{what} must be in HH:MM format", {"kind": "reminder_schedule", "value": value})
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def parse_schedule(data: Optional[Any]) -> Optional[ReminderSchedule]:
    """Validate and build a schedule from a dict (or pass an existing one through validation)."""
    if data is None:
        return None
    if isinstance(data, ReminderSchedule):
        data = {
            "time_of_day": data.time_of_day,
            "days": data.days,
            "quiet_hours": ({"start": data.quiet_hours.start, "end": data.quiet_hours.end}
                            if data.quiet_hours else None),
        }
    if not isinstance(data, Mapping):
        raise ValidationError("Schedule must be an object", {"kind": "reminder_schedule"})

    time_of_day = data.get("time_of_day")
    if time_of_day is not None:
        parse_time(time_of_day, "time_of_day")

    days = data.get("days") or []
    if isinstance(days, str) or not all(isinstance(d, str) for d in days):
        raise ValidationError("days must be a list of day tokens", {"kind": "reminder_schedule"})
    unknown = [d for d in days if d.lower() not in DAY_TOKENS]
    if unknown:
        raise ValidationError(
            f"Unknown day tokens: {', '.join(unknown)}. Expected: {', '.join(DAY_TOKENS)}",
            {"kind": "reminder_schedule"}
        )

    quiet_hours = None
    quiet = data.get("quiet_hours")
    if quiet is not None:
        if not isinstance(quiet, Mapping):
            raise ValidationError("quiet_hours must be an object", {"kind": "reminder_schedule"})
        parse_time(quiet.get("start"), "quiet_hours.start")
        parse_time(quiet.get("end"), "quiet_hours.end")
        quiet_hours = QuietHours(start=quiet["start"], end=quiet["end"])

    return ReminderSchedule(
        time_of_day=time_of_day,
        days=[d.lower() for d in days],
        quiet_hours=quiet_hours,
    )


def validate_channels(channels: Optional[List[str]]) -> List[str]:
    if channels is None:
        return ["in_app"]
    if isinstance(channels, str) or not channels:
        raise ValidationError("At least one delivery channel is required", {"kind": "reminder_channels"})
    unknown = [c for c in channels if c not in DELIVERY_CHANNELS]
    if unknown:
        raise ValidationError(
            f"Unknown delivery channels: {', '.join(map(str, unknown))}",
            {"kind": "reminder_channels"}
        )
    return list(dict.fromkeys(channels))


def in_quiet_hours(moment: time, start: time, end: time) -> bool:
    """Quiet hours may wrap midnight. Equal bounds mean no quiet hours."""
    if start == end:
        return False
    if start < end:
        return start <= moment < end
    return moment >= start or moment < end


def day_matches(days: List[str], moment: datetime) -> bool:
    if not days:
        return True
    weekday = moment.weekday()
    for token in days:
        if token == "daily":
            return True
        if token == "weekdays" and weekday < 5:
            return True
        if token == "weekends" and weekday >= 5:
            return True
        if token == WEEKDAY_TOKENS[weekday]:
            return True
    return False


def minutes_apart(a: time, b: time) -> int:
    """Distance on a 24h clock, in minutes."""
    diff = abs((a.hour * 60 + a.minute) - (b.hour * 60 + b.minute))
    return min(diff, 24 * 60 - diff)


class ReminderService:
    """Reminder rows, owned by the principal that created them."""

    def __init__(self, repository: TrackerRepository, enforcer: Enforcer):
        self.repository = repository
        self.enforcer = enforcer
        self.logger = get_logger("trackers.services.reminders")

    async def _ensure_single_entry_prompt(self, tracker_id: str, owner_id: str,
                                          exclude_id: Optional[str] = None):
        existing = await self.repository.list_reminders(tracker_id=tracker_id, owner_id=owner_id)
        for reminder in existing:
            if (reminder.id != exclude_id and reminder.is_active
                    and reminder.reminder_kind == ReminderKind.ENTRY_PROMPT):
                raise ConflictError(
                    "An active entry prompt reminder already exists for this tracker",
                    {"kind": "reminder_duplicate", "existing_reminder_id": reminder.id}
                )

    async def create_reminder(
        self,
        tracker_id: str,
        principal_id: str,
        reminder_kind: str,
        schedule: Optional[Any] = None,
        delivery_channels: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> TrackerReminder:
        await self.enforcer.require_reminder_author(tracker_id, principal_id)

        try:
            kind = ReminderKind(reminder_kind)
        except ValueError:
            raise ValidationError(f"Unknown reminder kind: {reminder_kind}", {"kind": "input"})
        parsed_schedule = parse_schedule(schedule)
        channels = validate_channels(delivery_channels)

        if kind == ReminderKind.ENTRY_PROMPT and is_active:
            await self._ensure_single_entry_prompt(tracker_id, principal_id)

        reminder = TrackerReminder(
            id=new_id(),
            tracker_id=tracker_id,
            owner_id=principal_id,
            reminder_kind=kind,
            schedule=parsed_schedule,
            delivery_channels=channels,
            is_active=is_active,
        )
        reminder = await self.repository.insert_reminder(reminder)

        self.logger.info(
            "Reminder created",
            reminder_id=reminder.id,
            tracker_id=tracker_id,
            principal_id=principal_id,
            reminder_kind=kind.value
        )
        return reminder

    async def get_reminder(self, reminder_id: str, principal_id: str) -> Optional[TrackerReminder]:
        reminder = await self.repository.get_reminder(reminder_id)
        if reminder is None or reminder.owner_id != principal_id:
            return None
        return reminder

    async def _get_owned(self, reminder_id: str, principal_id: str) -> TrackerReminder:
        reminder = await self.get_reminder(reminder_id, principal_id)
        if reminder is None:
            raise NotFoundError("Reminder not found", {"reminder_id": reminder_id})
        return reminder

    async def update_reminder(self, reminder_id: str, principal_id: str,
                              changes: Dict[str, Any]) -> TrackerReminder:
        reminder = await self._get_owned(reminder_id, principal_id)
        await self.enforcer.require_reminder_author(reminder.tracker_id, principal_id)

        unknown = set(changes) - {"schedule", "delivery_channels", "is_active"}
        if unknown:
            raise ValidationError(
                f"Unsupported reminder fields: {', '.join(sorted(unknown))}",
                {"kind": "input", "fields": sorted(unknown)}
            )
        schedule = parse_schedule(changes["schedule"]) if "schedule" in changes else reminder.schedule
        channels = (validate_channels(changes["delivery_channels"])
                    if "delivery_channels" in changes else reminder.delivery_channels)
        is_active = bool(changes.get("is_active", reminder.is_active))

        if (is_active and not reminder.is_active
                and reminder.reminder_kind == ReminderKind.ENTRY_PROMPT):
            await self._ensure_single_entry_prompt(reminder.tracker_id, principal_id, exclude_id=reminder.id)

        reminder.schedule = schedule
        reminder.delivery_channels = channels
        reminder.is_active = is_active
        reminder.updated_at = utc_now()
        reminder = await self.repository.update_reminder(reminder)

        self.logger.info("Reminder updated", reminder_id=reminder_id, principal_id=principal_id,
                         fields=sorted(changes))
        return reminder

    async def delete_reminder(self, reminder_id: str, principal_id: str):
        await self._get_owned(reminder_id, principal_id)
        await self.repository.delete_reminder(reminder_id)
        self.logger.info("Reminder deleted", reminder_id=reminder_id, principal_id=principal_id)

    async def list_reminders(self, tracker_id: str, principal_id: str) -> List[TrackerReminder]:
        await self.enforcer.require_view(tracker_id, principal_id)
        return await self.repository.list_reminders(tracker_id=tracker_id, owner_id=principal_id)


class ReminderEvaluator:
    """Decides whether a reminder should fire at a given moment.

    ``now`` is the owner's local wall-clock time.
    """

    def __init__(self, repository: TrackerRepository, resolver: PermissionResolver,
                 policy: Optional[ReminderPolicy] = None):
        self.repository = repository
        self.resolver = resolver
        self.policy = policy or ReminderPolicy()
        self.logger = get_logger("trackers.services.reminder_evaluator")

    async def evaluate_reminder(self, reminder_id: str, now: Optional[datetime] = None) -> ReminderDecision:
        reminder = await self.repository.get_reminder(reminder_id)
        if reminder is None:
            return ReminderDecision(False, "reminder_not_found")
        return await self.evaluate(reminder, now or utc_now())

    async def evaluate(self, reminder: TrackerReminder, now: datetime) -> ReminderDecision:
        decision = await self._evaluate(reminder, now)
        self.logger.debug(
            "Reminder evaluated",
            reminder_id=reminder.id,
            should_fire=decision.should_fire,
            reason=decision.reason
        )
        return decision

    async def _evaluate(self, reminder: TrackerReminder, now: datetime) -> ReminderDecision:
        if not reminder.is_active:
            return ReminderDecision(False, "inactive")

        tracker = await self.repository.get_tracker(reminder.tracker_id)
        if tracker is None or tracker.archived_at is not None:
            return ReminderDecision(False, "tracker_archived")

        # The owner may have lost access since the reminder was created
        permissions = await self.resolver.resolve(reminder.tracker_id, reminder.owner_id)
        if not permissions.can_edit:
            return ReminderDecision(False, "no_access")

        schedule = reminder.schedule or ReminderSchedule()
        quiet = schedule.quiet_hours or QuietHours(self.policy.quiet_hours_start, self.policy.quiet_hours_end)
        moment = now.time().replace(second=0, microsecond=0)
        if in_quiet_hours(moment, parse_time(quiet.start, "quiet_hours.start"),
                          parse_time(quiet.end, "quiet_hours.end")):
            return ReminderDecision(False, "quiet_hours")

        if not day_matches(schedule.days, now):
            return ReminderDecision(False, "day_not_scheduled")

        if schedule.time_of_day:
            scheduled = parse_time(schedule.time_of_day, "time_of_day")
            if minutes_apart(moment, scheduled) > self.policy.schedule_window_minutes:
                return ReminderDecision(False, "outside_time_window")

        entries = await self.repository.find_entries_for_date(reminder.tracker_id, reminder.owner_id, now.date())

        if reminder.reminder_kind == ReminderKind.ENTRY_PROMPT:
            if entries:
                return ReminderDecision(False, "entry_exists")
            return ReminderDecision(True, "entry_missing")

        if not entries:
            return ReminderDecision(False, "no_entry")
        if any(e.notes and e.notes.strip() for e in entries):
            return ReminderDecision(False, "notes_present")
        return ReminderDecision(True, "entry_without_notes")


class ReminderDispatcher:
    """Batch selection for the periodic reminder job."""

    def __init__(self, evaluator: ReminderEvaluator, daily_cap_per_owner: Optional[int] = None):
        self.evaluator = evaluator
        self.daily_cap_per_owner = (daily_cap_per_owner if daily_cap_per_owner is not None
                                    else evaluator.policy.daily_cap_per_owner)
        self.logger = get_logger("trackers.services.reminder_dispatcher")

    async def select_due(self, reminders: List[TrackerReminder], now: datetime,
                         fired_today: Optional[Dict[str, int]] = None) -> List[TrackerReminder]:
        """Reminders to fire now, at most one entry prompt per tracker and owner,
        and no more than the daily cap per owner including ``fired_today``."""
        counts = dict(fired_today or {})
        prompted = set()
        due = []
        for reminder in reminders:
            if counts.get(reminder.owner_id, 0) >= self.daily_cap_per_owner:
                continue
            prompt_key = (reminder.tracker_id, reminder.owner_id)
            if reminder.reminder_kind == ReminderKind.ENTRY_PROMPT and prompt_key in prompted:
                continue
            decision = await self.evaluator.evaluate(reminder, now)
            if not decision.should_fire:
                continue
            if reminder.reminder_kind == ReminderKind.ENTRY_PROMPT:
                prompted.add(prompt_key)
            counts[reminder.owner_id] = counts.get(reminder.owner_id, 0) + 1
            due.append(reminder)

        self.logger.info("Reminder batch selected", candidates=len(reminders), due=len(due))
        return due
