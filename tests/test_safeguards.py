"""
Unit tests for spfwatch/spf/safeguards.py
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from spfwatch import db
from spfwatch.models import FlatteningOperation
from spfwatch.spf.safeguards import (
    DEFAULT_PRESET,
    PRESETS,
    assess_severity,
    count_auto_updates,
    evaluate_auto_update,
    get_policy,
    rollback_plan,
)
from spfwatch.spf.types import IPChangeEvent

NOW = datetime(2026, 3, 11, 15, 0, tzinfo=timezone.utc)


def _change(include="spf.sender.test", esp="Unknown", impact="low"):
    return IPChangeEvent(
        domain="example.com",
        include_domain=include,
        esp_name=esp,
        change_type="added",
        added=("198.51.100.3",),
        removed=(),
        previous_ips=("198.51.100.1",),
        current_ips=("198.51.100.1", "198.51.100.3"),
        impact=impact,
        auto_update_safe=True,
    )


def _stored_update(created_at, trigger_type="auto_update", domain="example.com"):
    db.session.add(FlatteningOperation(
        user_id="alice",
        domain=domain,
        trigger_type=trigger_type,
        status="pending",
        original_record="v=spf1 include:spf.sender.test -all",
        original_lookup_count=1,
        target_includes=json.dumps(["spf.sender.test"]),
        created_at=created_at,
    ))
    db.session.commit()


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------


def test_presets():
    assert {name: (p.max_changes_per_day, p.max_changes_per_week, p.impact_threshold)
            for name, p in PRESETS.items()} == {
        "conservative": (1, 3, "low"),
        "balanced": (3, 10, "medium"),
        "aggressive": (10, 25, "high"),
    }


@pytest.mark.parametrize("name", [None, "", "reckless"])
def test_unknown_preset_falls_back_to_default(name):
    assert get_policy(name) is PRESETS[DEFAULT_PRESET]


def test_preset_names_are_case_insensitive():
    assert get_policy(" Aggressive ") is PRESETS["aggressive"]


# ---------------------------------------------------------------------------
# Severity
# ---------------------------------------------------------------------------


def test_severity_is_the_highest_impact():
    severity, reasons = assess_severity([_change(impact="low"), _change(impact="high")])

    assert severity == "high"
    assert reasons == ["High impact changes detected"]


def test_no_changes_are_low():
    assert assess_severity([]) == ("low", [])


def test_many_changes_raise_severity_one_step():
    assert assess_severity([_change()] * 21)[0] == "medium"
    assert assess_severity([_change(impact="medium")] * 21)[0] == "high"
    assert assess_severity([_change(impact="high")] * 21)[0] == "high"


def test_critical_esp_is_at_least_medium():
    severity, reasons = assess_severity([_change("_spf.google.com", "Google Workspace")])

    assert severity == "medium"
    assert "Critical ESPs affected: Google Workspace" in reasons


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


def test_low_impact_change_is_approved(app):
    decision = evaluate_auto_update("alice", "example.com", [_change()], PRESETS["conservative"], NOW)

    assert decision.approved is True
    assert decision.severity == "low"
    assert decision.reasons == ()


def test_change_over_threshold_is_held_back(app):
    decision = evaluate_auto_update(
        "alice", "example.com", [_change(impact="medium")], PRESETS["conservative"], NOW,
    )

    assert decision.approved is False
    assert any("exceeds the conservative threshold" in r for r in decision.reasons)


def test_critical_change_is_never_automatic(app):
    decision = evaluate_auto_update(
        "alice", "example.com", [_change(impact="critical")], PRESETS["aggressive"], NOW,
    )

    assert decision.approved is False
    assert decision.severity == "critical"


def test_daily_limit_counts_updates_since_midnight(app):
    _stored_update(NOW - timedelta(hours=1))
    _stored_update(NOW - timedelta(hours=16))  # yesterday

    assert count_auto_updates("alice", "example.com", NOW.replace(hour=0)) == 1

    decision = evaluate_auto_update("alice", "example.com", [_change()], PRESETS["conservative"], NOW)

    assert decision.approved is False
    assert decision.reasons == ("Daily update limit reached: 1/1",)


def test_weekly_limit(app):
    for days in (1, 2, 3):
        _stored_update(NOW - timedelta(days=days))
    _stored_update(NOW - timedelta(days=8))

    decision = evaluate_auto_update("alice", "example.com", [_change()], PRESETS["conservative"], NOW)

    assert decision.approved is False
    assert decision.reasons == ("Weekly update limit reached: 3/3",)


def test_manual_operations_and_other_domains_do_not_count(app):
    _stored_update(NOW - timedelta(hours=1), trigger_type="manual")
    _stored_update(NOW - timedelta(hours=1), domain="other.example")

    decision = evaluate_auto_update("alice", "example.com", [_change()], PRESETS["conservative"], NOW)

    assert decision.approved is True


# ---------------------------------------------------------------------------
# Rollback plans
# ---------------------------------------------------------------------------


def test_rollback_plan():
    plan = rollback_plan(
        "example.com",
        "v=spf1 include:spf.sender.test -all",
        "v=spf1 ip4:198.51.100.1 ip4:198.51.100.3 -all",
        [_change()],
    )

    assert plan["rollback_record"] == "v=spf1 include:spf.sender.test -all"
    assert "to: v=spf1 include:spf.sender.test -all" in plan["instructions"]
    assert len(plan["triggers"]) == 4
    assert plan["estimated_minutes"] == 15
    assert plan["affected_includes"] == ["spf.sender.test"]
    assert plan["verification_steps"]


def test_rollback_plan_for_large_high_impact_update():
    changes = [_change(f"s{i}.sender.test", impact="high" if i == 0 else "low") for i in range(11)]

    plan = rollback_plan("example.com", "v=spf1 -all", "v=spf1 -all", changes)

    assert len(plan["triggers"]) == 5
    assert plan["estimated_minutes"] == 25
    assert len(plan["affected_includes"]) == 11
