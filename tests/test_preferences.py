"""Preference resolution and updates."""

import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from app.database import async_session
from app.models.audit import AuditLog
from app.models.notification import NotificationChannel as Ch
from app.models.notification import NotificationPreferences
from app.services.preferences import (
    PreferenceValidationError,
    evaluate_preferences,
    in_quiet_hours,
    resolve_channels,
)


@pytest.mark.asyncio
async def test_resolve_system_defaults(resolver):
    assert await resolver.resolve("u1", "HR_ACTIVITIES") == {Ch.IN_APP, Ch.EMAIL}
    # Lazily created with defaults
    prefs = await resolver.get("u1")
    assert prefs is not None
    assert prefs.enabled is True


@pytest.mark.asyncio
async def test_get_or_create_is_stable(resolver):
    a = await resolver.get_or_create("u1")
    b = await resolver.get_or_create("u1")
    assert a.id == b.id


@pytest.mark.asyncio
async def test_category_override_wins(resolver):
    await resolver.update_category_preferences("u1", "SECURITY_ALERTS", ["sms", "in_app"])
    assert await resolver.resolve("u1", "SECURITY_ALERTS") == {Ch.IN_APP, Ch.SMS}
    assert await resolver.resolve("u1", "COMMENTS") == {Ch.IN_APP, Ch.EMAIL}


@pytest.mark.asyncio
async def test_clear_category_override(resolver):
    await resolver.update_category_preferences("u1", "COMMENTS", ["push"])
    await resolver.update_category_preferences("u1", "COMMENTS", None)
    assert await resolver.resolve("u1", "COMMENTS") == {Ch.IN_APP, Ch.EMAIL}


@pytest.mark.asyncio
async def test_disabled_beats_every_override(resolver):
    await resolver.update_category_preferences("u1", "SECURITY_ALERTS", ["in_app"])
    await resolver.toggle_notifications("u1", False)
    for category in ("SECURITY_ALERTS", "HR_ACTIVITIES", "ADMIN"):
        assert await resolver.resolve("u1", category) == set()


@pytest.mark.asyncio
async def test_default_flags_are_used(resolver):
    await resolver.update_preferences("u1", {"default_channels": {"in_app": True, "email": False, "push": True}})
    assert await resolver.resolve("u1", "INTERVIEWS") == {Ch.IN_APP, Ch.PUSH}


@pytest.mark.asyncio
async def test_shallow_merge_keeps_other_fields(resolver):
    await resolver.update_category_preferences("u1", "ADMIN", ["in_app"])
    prefs = await resolver.update_preferences("u1", {"enabled": False})
    assert prefs.enabled is False
    assert prefs.category_overrides == {"ADMIN": ["in_app"]}


@pytest.mark.asyncio
@pytest.mark.parametrize("changes", [
    {"default_channels": {"carrier_pigeon": True}},
    {"category_channels": {"HR_ACTIVITIES": ["fax"]}},
    {"category_channels": {"NOT_A_CATEGORY": ["email"]}},
    {"colour": "blue"},
])
async def test_invalid_updates_rejected(resolver, changes):
    with pytest.raises(PreferenceValidationError):
        await resolver.update_preferences("u1", changes)
    assert await resolver.resolve("u1", "HR_ACTIVITIES") == {Ch.IN_APP, Ch.EMAIL}


@pytest.mark.asyncio
async def test_reset(resolver):
    await resolver.update_preferences(
        "u1", {"enabled": False, "category_channels": {"ADMIN": ["sms"]}}
    )
    prefs = await resolver.reset_preferences("u1")
    assert prefs.enabled is True
    assert prefs.category_overrides == {}
    assert await resolver.resolve("u1", "ADMIN") == {Ch.IN_APP, Ch.EMAIL}


@pytest.mark.asyncio
async def test_update_emits_audit_event(resolver):
    await resolver.update_preferences("u1", {"enabled": False}, modified_by="admin-1")
    async with async_session() as db:
        rows = (await db.execute(select(AuditLog))).scalars().all()
    assert [r.event_type for r in rows] == ["NOTIFICATION_PREFERENCES_UPDATED"]
    assert rows[0].actor_id == "admin-1"
    assert rows[0].resource_id == "u1"


def test_resolve_channels_without_enabled_flags_falls_back():
    prefs = NotificationPreferences(user_id="u1", enabled=True, default_channels='{"in_app": false}')
    assert resolve_channels(prefs, "HR_ACTIVITIES") == {Ch.IN_APP, Ch.EMAIL}


def test_resolve_channels_empty_override_routes_nowhere():
    prefs = NotificationPreferences(user_id="u1", enabled=True, category_channels='{"COMMENTS": []}')
    assert resolve_channels(prefs, "COMMENTS") == set()


# ── Gating: category rules, quiet hours, digest ─────────
def _prefs(**kw):
    for key in ("category_settings", "quiet_hours", "email_digest"):
        if key in kw:
            kw[key] = json.dumps(kw[key])
    return NotificationPreferences(user_id="u1", enabled=True, **kw)


# 2026-03-04 is a Wednesday
WED_2300 = datetime(2026, 3, 4, 23, 0, tzinfo=timezone.utc)
WED_0700 = datetime(2026, 3, 4, 7, 0, tzinfo=timezone.utc)
WED_1200 = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


def test_evaluate_without_rules_matches_resolve():
    result = evaluate_preferences(_prefs(), "INTERVIEWS", "MEDIUM", WED_1200)
    assert result.should_notify is True
    assert result.channels == {Ch.IN_APP, Ch.EMAIL}


def test_disabled_category_is_suppressed():
    prefs = _prefs(category_settings={"COMMENTS": {"enabled": False}})
    result = evaluate_preferences(prefs, "COMMENTS", "HIGH", WED_1200)
    assert result.should_notify is False
    assert result.reason == "Category COMMENTS disabled by user"
    assert evaluate_preferences(prefs, "INTERVIEWS", "HIGH", WED_1200).should_notify is True


def test_min_priority_threshold():
    prefs = _prefs(category_settings={"SYSTEM_UPDATES": {"min_priority": "HIGH"}})
    assert evaluate_preferences(prefs, "SYSTEM_UPDATES", "MEDIUM", WED_1200).should_notify is False
    assert evaluate_preferences(prefs, "SYSTEM_UPDATES", "HIGH", WED_1200).should_notify is True
    assert evaluate_preferences(prefs, "SYSTEM_UPDATES", "CRITICAL", WED_1200).should_notify is True


def test_overnight_quiet_hours():
    prefs = _prefs(quiet_hours={"enabled": True, "start": "22:00", "end": "08:00"})
    late = evaluate_preferences(prefs, "HR_ACTIVITIES", "MEDIUM", WED_2300)
    assert late.should_notify is False
    assert late.is_quiet_hours is True
    assert evaluate_preferences(prefs, "HR_ACTIVITIES", "MEDIUM", WED_0700).should_notify is False
    assert evaluate_preferences(prefs, "HR_ACTIVITIES", "MEDIUM", WED_1200).should_notify is True


def test_quiet_hours_critical_and_days_of_week():
    prefs = _prefs(quiet_hours={"enabled": True, "start": "22:00", "end": "08:00", "allow_critical": True})
    assert evaluate_preferences(prefs, "SECURITY_ALERTS", "CRITICAL", WED_2300).should_notify is True

    strict = _prefs(quiet_hours={"enabled": True, "start": "22:00", "end": "08:00", "allow_critical": False})
    assert evaluate_preferences(strict, "SECURITY_ALERTS", "CRITICAL", WED_2300).should_notify is False

    weekends = _prefs(quiet_hours={"enabled": True, "start": "22:00", "end": "08:00", "days_of_week": [0, 6]})
    assert evaluate_preferences(weekends, "HR_ACTIVITIES", "MEDIUM", WED_2300).should_notify is True


def test_quiet_hours_use_configured_timezone():
    # 12:00 UTC is 21:00 in Tokyo, outside a 22:00-23:30 window; 13:00 UTC is inside
    prefs = _prefs(quiet_hours={"enabled": True, "start": "22:00", "end": "23:30", "timezone": "Asia/Tokyo"})
    assert in_quiet_hours(prefs.quiet_hours_settings, "LOW", WED_1200) is False
    assert in_quiet_hours(prefs.quiet_hours_settings, "LOW", WED_1200.replace(hour=13)) is True


def test_digest_mode_removes_email():
    prefs = _prefs(email_digest={"enabled": True, "frequency": "DAILY"})
    result = evaluate_preferences(prefs, "INTERVIEWS", "MEDIUM", WED_1200)
    assert result.should_notify is True
    assert result.is_digest_mode is True
    assert result.channels == {Ch.IN_APP}

    immediate = _prefs(email_digest={"enabled": True, "frequency": "IMMEDIATE"})
    assert evaluate_preferences(immediate, "INTERVIEWS", "MEDIUM", WED_1200).channels == {Ch.IN_APP, Ch.EMAIL}


def test_digest_mode_with_email_only_is_suppressed():
    prefs = _prefs(
        category_channels=json.dumps({"INTERVIEWS": ["email"]}),
        email_digest={"enabled": True, "frequency": "WEEKLY"},
    )
    result = evaluate_preferences(prefs, "INTERVIEWS", "MEDIUM", WED_1200)
    assert result.should_notify is False
    assert result.is_digest_mode is True


@pytest.mark.asyncio
async def test_category_rule_keeps_channel_override(resolver):
    await resolver.update_category_preferences("u1", "COMMENTS", ["push"])
    prefs = await resolver.update_category_rule("u1", "COMMENTS", min_priority="MEDIUM")
    assert prefs.category_overrides == {"COMMENTS": ["push"]}
    assert prefs.category_rules == {"COMMENTS": {"min_priority": "MEDIUM"}}

    prefs = await resolver.update_category_rule("u1", "COMMENTS", enabled=False)
    assert prefs.category_rules == {"COMMENTS": {"min_priority": "MEDIUM", "enabled": False}}
    result = await resolver.evaluate("u1", "COMMENTS", "HIGH")
    assert result.should_notify is False


@pytest.mark.asyncio
async def test_gating_updates_are_validated(resolver):
    with pytest.raises(PreferenceValidationError):
        await resolver.update_preferences("u1", {"quiet_hours": {"start": "25:00"}})
    with pytest.raises(PreferenceValidationError):
        await resolver.update_preferences("u1", {"quiet_hours": {"timezone": "Mars/Olympus"}})
    with pytest.raises(PreferenceValidationError):
        await resolver.update_preferences("u1", {"quiet_hours": {"days_of_week": [7]}})
    with pytest.raises(PreferenceValidationError):
        await resolver.update_preferences("u1", {"email_digest": {"frequency": "MONTHLY"}})
    with pytest.raises(PreferenceValidationError):
        await resolver.update_category_rule("u1", "COMMENTS", min_priority="URGENT")


@pytest.mark.asyncio
async def test_reset_clears_gating(resolver):
    await resolver.update_preferences("u1", {
        "quiet_hours": {"enabled": True},
        "email_digest": {"enabled": True, "frequency": "DAILY"},
        "category_settings": {"ADMIN": {"enabled": False}},
    })
    prefs = await resolver.reset_preferences("u1")
    assert prefs.quiet_hours_settings["enabled"] is False
    assert prefs.email_digest_settings == {"enabled": False, "frequency": "IMMEDIATE"}
    assert prefs.category_rules == {}
