"""Preference resolver — per-user channel routing rules."""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models import utcnow
from app.models.audit import AuditEventType
from app.models.notification import (
    DEFAULT_CHANNEL_FLAGS,
    DEFAULT_EMAIL_DIGEST,
    DEFAULT_QUIET_HOURS,
    PRIORITY_RANK,
    SYSTEM_DEFAULT_CHANNELS,
    DigestFrequency,
    NotificationCategory,
    NotificationChannel,
    NotificationPreferences,
    NotificationPriority,
)
from app.services.audit import AuditLogger

logger = logging.getLogger(__name__)

PREFERENCE_FIELDS = {
    "enabled",
    "default_channels",
    "category_channels",
    "category_settings",
    "quiet_hours",
    "email_digest",
}
_CHANNEL_VALUES = {c.value for c in NotificationChannel}


class PreferenceValidationError(ValueError):
    """Unknown channel or category in a preference update."""


def _channel(value) -> NotificationChannel:
    try:
        return NotificationChannel(value)
    except ValueError:
        raise PreferenceValidationError(f"Unknown channel: {value}") from None


def _category(value) -> NotificationCategory:
    try:
        return NotificationCategory(value)
    except ValueError:
        raise PreferenceValidationError(f"Unknown category: {value}") from None


def validate_channel_flags(flags: dict) -> dict:
    if not isinstance(flags, dict):
        raise PreferenceValidationError("default_channels must be a mapping of channel -> bool")
    return {_channel(k).value: bool(v) for k, v in flags.items()}


def validate_channel_list(channels) -> list[str]:
    if isinstance(channels, str) or not isinstance(channels, (list, tuple, set)):
        raise PreferenceValidationError("Category channels must be a list")
    seen = {_channel(c) for c in channels}
    return [c.value for c in NotificationChannel if c in seen]


def validate_category_channels(overrides: dict) -> dict:
    if not isinstance(overrides, dict):
        raise PreferenceValidationError("category_channels must be a mapping of category -> channels")
    return {_category(k).value: validate_channel_list(v) for k, v in overrides.items()}


def _priority(value) -> NotificationPriority:
    try:
        return NotificationPriority(value)
    except ValueError:
        raise PreferenceValidationError(f"Unknown priority: {value}") from None


def validate_category_rule(rule: dict) -> dict:
    if not isinstance(rule, dict):
        raise PreferenceValidationError("Category rule must be a mapping")
    unknown = set(rule) - {"enabled", "min_priority"}
    if unknown:
        raise PreferenceValidationError(f"Unknown category rule fields: {', '.join(sorted(unknown))}")
    cleaned = {}
    if rule.get("enabled") is not None:
        cleaned["enabled"] = bool(rule["enabled"])
    if rule.get("min_priority") is not None:
        cleaned["min_priority"] = _priority(rule["min_priority"]).value
    return cleaned


def validate_category_settings(settings: dict) -> dict:
    if not isinstance(settings, dict):
        raise PreferenceValidationError("category_settings must be a mapping of category -> rule")
    return {_category(k).value: validate_category_rule(v) for k, v in settings.items()}


_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def validate_quiet_hours(settings: dict) -> dict:
    if not isinstance(settings, dict):
        raise PreferenceValidationError("quiet_hours must be a mapping")
    unknown = set(settings) - set(DEFAULT_QUIET_HOURS)
    if unknown:
        raise PreferenceValidationError(f"Unknown quiet_hours fields: {', '.join(sorted(unknown))}")
    merged = {**DEFAULT_QUIET_HOURS, **settings}
    for key in ("start", "end"):
        if not isinstance(merged[key], str) or not _HHMM.match(merged[key]):
            raise PreferenceValidationError(f"quiet_hours.{key} must be HH:MM")
    try:
        _zone(str(merged["timezone"]))
    except (ZoneInfoNotFoundError, ValueError):
        raise PreferenceValidationError(f"Unknown timezone: {merged['timezone']}") from None
    days = merged["days_of_week"] or []
    if not isinstance(days, list) or any(not isinstance(d, int) or not 0 <= d <= 6 for d in days):
        raise PreferenceValidationError("quiet_hours.days_of_week must be a list of 0-6")
    merged["enabled"] = bool(merged["enabled"])
    merged["allow_critical"] = bool(merged["allow_critical"])
    merged["days_of_week"] = sorted(set(days))
    return merged


def validate_email_digest(settings: dict) -> dict:
    if not isinstance(settings, dict):
        raise PreferenceValidationError("email_digest must be a mapping")
    unknown = set(settings) - set(DEFAULT_EMAIL_DIGEST)
    if unknown:
        raise PreferenceValidationError(f"Unknown email_digest fields: {', '.join(sorted(unknown))}")
    merged = {**DEFAULT_EMAIL_DIGEST, **settings}
    try:
        frequency = DigestFrequency(merged["frequency"])
    except ValueError:
        raise PreferenceValidationError(f"Unknown digest frequency: {merged['frequency']}") from None
    return {"enabled": bool(merged["enabled"]), "frequency": frequency.value}


def resolve_channels(
    prefs: Optional[NotificationPreferences], category: NotificationCategory
) -> set[NotificationChannel]:
    """Pure routing rule.

    Disabled users get nothing. A category override, when present, replaces
    the defaults outright; otherwise the enabled default flags apply, and a
    user with no enabled flag at all falls back to the system defaults.
    """
    if prefs is None:
        return set(SYSTEM_DEFAULT_CHANNELS)
    if not prefs.enabled:
        return set()

    category = NotificationCategory(category)
    override = prefs.category_overrides.get(category.value)
    if override is not None:
        return {NotificationChannel(c) for c in override if c in _CHANNEL_VALUES}

    enabled = {
        NotificationChannel(c)
        for c, on in prefs.default_channel_flags.items()
        if on and c in _CHANNEL_VALUES
    }
    return enabled or set(SYSTEM_DEFAULT_CHANNELS)


@dataclass
class PreferenceEvaluation:
    should_notify: bool
    channels: set[NotificationChannel] = field(default_factory=set)
    reason: Optional[str] = None
    is_quiet_hours: bool = False
    is_digest_mode: bool = False


def _zone(name: Optional[str]):
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def in_quiet_hours(settings: dict, priority: NotificationPriority, now: datetime) -> bool:
    """True when ``now`` falls inside the user's quiet window.

    Windows whose end precedes their start wrap past midnight. Days of week
    use 0=Sunday and are checked in the configured timezone.
    """
    if not settings.get("enabled"):
        return False
    if NotificationPriority(priority) == NotificationPriority.CRITICAL and settings.get("allow_critical"):
        return False

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(_zone(settings.get("timezone")))

    days = settings.get("days_of_week") or []
    if days and local.isoweekday() % 7 not in days:
        return False

    current = local.hour * 60 + local.minute
    start, end = _minutes(settings["start"]), _minutes(settings["end"])
    if end < start:
        return current >= start or current <= end
    return start <= current <= end


def evaluate_preferences(
    prefs: Optional[NotificationPreferences],
    category: NotificationCategory,
    priority: NotificationPriority,
    now: Optional[datetime] = None,
) -> PreferenceEvaluation:
    """Decide whether to notify and on which channels.

    Channel selection is ``resolve_channels``. The per-category rule,
    quiet hours and digest mode only gate or narrow that selection.
    """
    category = NotificationCategory(category)
    priority = NotificationPriority(priority)
    channels = resolve_channels(prefs, category)
    if prefs is None:
        return PreferenceEvaluation(should_notify=True, channels=channels)
    if not prefs.enabled:
        return PreferenceEvaluation(False, reason="Notifications globally disabled by user")

    rule = prefs.category_rules.get(category.value, {})
    if rule.get("enabled") is False:
        return PreferenceEvaluation(False, reason=f"Category {category.value} disabled by user")
    min_priority = rule.get("min_priority")
    if min_priority and PRIORITY_RANK[priority] < PRIORITY_RANK[NotificationPriority(min_priority)]:
        return PreferenceEvaluation(
            False, reason=f"Priority {priority.value} below minimum {min_priority}"
        )
    if not channels:
        return PreferenceEvaluation(False, reason=f"No channels selected for {category.value}")

    if in_quiet_hours(prefs.quiet_hours_settings, priority, now or datetime.now(timezone.utc)):
        return PreferenceEvaluation(False, reason="Quiet hours active", is_quiet_hours=True)

    digest = prefs.email_digest_settings
    if digest.get("enabled") and digest.get("frequency") != DigestFrequency.IMMEDIATE.value:
        channels.discard(NotificationChannel.EMAIL)
        if not channels:
            return PreferenceEvaluation(False, reason="Email held for digest", is_digest_mode=True)
        return PreferenceEvaluation(True, channels=channels, is_digest_mode=True)

    return PreferenceEvaluation(True, channels=channels)


class PreferenceResolver:
    def __init__(self, session_factory: async_sessionmaker, audit: Optional[AuditLogger] = None):
        self.session_factory = session_factory
        self.audit = audit

    async def _load(self, db, user_id: str) -> Optional[NotificationPreferences]:
        result = await db.execute(
            select(NotificationPreferences).where(NotificationPreferences.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get(self, user_id: str) -> Optional[NotificationPreferences]:
        async with self.session_factory() as db:
            return await self._load(db, user_id)

    async def get_or_create(self, user_id: str) -> NotificationPreferences:
        """Lazily create a defaults row; concurrent first calls converge on one row."""
        async with self.session_factory() as db:
            prefs = await self._load(db, user_id)
            if prefs is not None:
                return prefs
            prefs = NotificationPreferences(
                user_id=user_id,
                enabled=True,
                default_channels=json.dumps(DEFAULT_CHANNEL_FLAGS),
                category_channels="{}",
            )
            db.add(prefs)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.debug(f"Preferences for {user_id} created concurrently; reloading")
                return await self._load(db, user_id)
            return prefs

    async def resolve(self, user_id: str, category: NotificationCategory) -> set[NotificationChannel]:
        return resolve_channels(await self.get_or_create(user_id), category)

    async def evaluate(
        self,
        user_id: str,
        category: NotificationCategory,
        priority: NotificationPriority,
        now: Optional[datetime] = None,
    ) -> PreferenceEvaluation:
        return evaluate_preferences(await self.get_or_create(user_id), category, priority, now)

    async def update_preferences(
        self, user_id: str, changes: dict, modified_by: Optional[str] = None
    ) -> NotificationPreferences:
        """Shallow merge: each top-level key present replaces the stored value."""
        unknown = set(changes) - PREFERENCE_FIELDS
        if unknown:
            raise PreferenceValidationError(f"Unknown preference fields: {', '.join(sorted(unknown))}")

        values = {}
        if changes.get("enabled") is not None:
            values["enabled"] = bool(changes["enabled"])
        if changes.get("default_channels") is not None:
            values["default_channels"] = json.dumps(validate_channel_flags(changes["default_channels"]))
        if changes.get("category_channels") is not None:
            values["category_channels"] = json.dumps(validate_category_channels(changes["category_channels"]))
        if changes.get("category_settings") is not None:
            values["category_settings"] = json.dumps(validate_category_settings(changes["category_settings"]))
        if changes.get("quiet_hours") is not None:
            values["quiet_hours"] = json.dumps(validate_quiet_hours(changes["quiet_hours"]))
        if changes.get("email_digest") is not None:
            values["email_digest"] = json.dumps(validate_email_digest(changes["email_digest"]))

        await self.get_or_create(user_id)
        async with self.session_factory() as db:
            prefs = await self._load(db, user_id)
            for key, value in values.items():
                setattr(prefs, key, value)
            prefs.last_modified_by = modified_by or user_id
            prefs.updated_at = utcnow()
            await db.commit()

        if self.audit is not None:
            await self.audit.record(
                AuditEventType.NOTIFICATION_PREFERENCES_UPDATED,
                action="update_preferences",
                actor_id=modified_by or user_id,
                resource="notification_preferences",
                resource_id=user_id,
                metadata={"changed": sorted(values)},
            )
        return prefs

    async def update_category_preferences(
        self,
        user_id: str,
        category: NotificationCategory,
        channels: Optional[list],
        modified_by: Optional[str] = None,
    ) -> NotificationPreferences:
        """Set one category override, or clear it when ``channels`` is None."""
        category = _category(category)
        overrides = dict((await self.get_or_create(user_id)).category_overrides)
        if channels is None:
            overrides.pop(category.value, None)
        else:
            overrides[category.value] = validate_channel_list(channels)
        return await self.update_preferences(
            user_id, {"category_channels": overrides}, modified_by=modified_by
        )

    async def update_category_rule(
        self,
        user_id: str,
        category: NotificationCategory,
        enabled: Optional[bool] = None,
        min_priority: Optional[NotificationPriority] = None,
        modified_by: Optional[str] = None,
    ) -> NotificationPreferences:
        """Merge ``enabled``/``min_priority`` into one category's rule; channels are untouched."""
        category = _category(category)
        rules = dict((await self.get_or_create(user_id)).category_rules)
        rule = dict(rules.get(category.value, {}))
        rule.update(validate_category_rule({"enabled": enabled, "min_priority": min_priority}))
        rules[category.value] = rule
        return await self.update_preferences(
            user_id, {"category_settings": rules}, modified_by=modified_by
        )

    async def toggle_notifications(
        self, user_id: str, enabled: bool, modified_by: Optional[str] = None
    ) -> NotificationPreferences:
        return await self.update_preferences(user_id, {"enabled": enabled}, modified_by=modified_by)

    async def reset_preferences(
        self, user_id: str, modified_by: Optional[str] = None
    ) -> NotificationPreferences:
        return await self.update_preferences(
            user_id,
            {
                "enabled": True,
                "default_channels": dict(DEFAULT_CHANNEL_FLAGS),
                "category_channels": {},
                "category_settings": {},
                "quiet_hours": dict(DEFAULT_QUIET_HOURS),
                "email_digest": dict(DEFAULT_EMAIL_DIGEST),
            },
            modified_by=modified_by,
        )
