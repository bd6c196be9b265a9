"""
Auto-update safeguards.

Before the engine re-flattens a record after safe include changes, the
update is checked against the domain's safeguard preset:

- rate limits: auto-update operations already stored since UTC midnight
  and over the last seven days
- impact threshold: the combined severity of the changes may not exceed
  the preset's threshold, and critical changes are never automatic

Every stored auto-update also carries a rollback plan: the record to go
back to, how to do it and when to do it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Sequence

from spfwatch import db
from spfwatch.models import FlatteningOperation
from spfwatch.spf.types import IPChangeEvent

logger = logging.getLogger(__name__)

SEVERITY_LEVELS = ("low", "medium", "high", "critical")

# ESPs whose outage affects most of a domain's mail.
CRITICAL_ESPS = frozenset({"Google Workspace", "Microsoft 365"})


@dataclass(frozen=True)
class SafeguardPolicy:
    name: str
    max_changes_per_day: int
    max_changes_per_week: int
    impact_threshold: str  # highest severity applied without a person deciding


PRESETS: dict[str, SafeguardPolicy] = {
    "conservative": SafeguardPolicy("conservative", 1, 3, "low"),
    "balanced": SafeguardPolicy("balanced", 3, 10, "medium"),
    "aggressive": SafeguardPolicy("aggressive", 10, 25, "high"),
}

DEFAULT_PRESET = "balanced"


def get_policy(name: str | None) -> SafeguardPolicy:
    """Return the named preset, falling back to the default for unknown names."""
    policy = PRESETS.get((name or "").strip().lower())
    if policy is None:
        if name:
            logger.warning("Unknown safeguard preset %r; using %s", name, DEFAULT_PRESET)
        policy = PRESETS[DEFAULT_PRESET]
    return policy


@dataclass(frozen=True)
class SafeguardDecision:
    approved: bool
    severity: str
    reasons: tuple[str, ...] = ()


def assess_severity(changes: Sequence[IPChangeEvent]) -> tuple[str, list[str]]:
    """Return the combined severity of *changes* and what drove it."""
    reasons: list[str] = []
    index = max((SEVERITY_LEVELS.index(c.impact) for c in changes if c.impact in SEVERITY_LEVELS), default=0)
    if index:
        reasons.append(f"{SEVERITY_LEVELS[index].capitalize()} impact changes detected")

    if len(changes) > 20:
        # low -> medium -> high; high and critical stay.
        if index < 2:
            index += 1
        reasons.append(f"Large number of changes: {len(changes)}")

    critical = sorted({c.esp_name for c in changes if c.esp_name in CRITICAL_ESPS})
    if critical:
        index = max(index, 1)
        reasons.append(f"Critical ESPs affected: {', '.join(critical)}")

    return SEVERITY_LEVELS[index], reasons


def count_auto_updates(user_id: str, domain: str, since: datetime) -> int:
    return db.session.execute(
        db.select(db.func.count(FlatteningOperation.id)).where(
            FlatteningOperation.user_id == user_id,
            FlatteningOperation.domain == domain,
            FlatteningOperation.trigger_type == "auto_update",
            FlatteningOperation.created_at >= since,
        )
    ).scalar_one()


def evaluate_auto_update(
    user_id: str,
    domain: str,
    changes: Sequence[IPChangeEvent],
    policy: SafeguardPolicy,
    now: datetime | None = None,
) -> SafeguardDecision:
    """Decide whether an auto-update for *changes* may be stored."""
    now = now or datetime.now(timezone.utc)
    reasons: list[str] = []

    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    daily = count_auto_updates(user_id, domain, midnight)
    if daily >= policy.max_changes_per_day:
        reasons.append(f"Daily update limit reached: {daily}/{policy.max_changes_per_day}")
    weekly = count_auto_updates(user_id, domain, now - timedelta(days=7))
    if weekly >= policy.max_changes_per_week:
        reasons.append(f"Weekly update limit reached: {weekly}/{policy.max_changes_per_week}")

    severity, severity_reasons = assess_severity(changes)
    over_threshold = SEVERITY_LEVELS.index(severity) > SEVERITY_LEVELS.index(policy.impact_threshold)
    if severity == "critical" or over_threshold:
        reasons.extend(severity_reasons)
        reasons.append(
            f"Change severity {severity} exceeds the {policy.name} threshold ({policy.impact_threshold})"
        )

    return SafeguardDecision(approved=not reasons, severity=severity, reasons=tuple(reasons))


def rollback_plan(
    domain: str,
    current_record: str,
    proposed_record: str,
    changes: Sequence[IPChangeEvent],
) -> dict:
    """Describe how to undo publishing *proposed_record* for *domain*."""
    triggers = [
        "SPF authentication failure rate above 5%",
        "Email delivery failure rate above 2%",
        "Bounce rate increase above 10%",
        "DMARC aggregate reports showing new SPF failures",
    ]
    if any(c.impact in ("high", "critical") for c in changes):
        triggers.append("Any authentication issue with the affected ESPs")

    minutes = 15
    if len(changes) > 10:
        minutes += 10

    return {
        "rollback_record": current_record,
        "instructions": [
            f"Revert the SPF TXT record of {domain}",
            f"from: {proposed_record}",
            f"to: {current_record}",
            "Wait 5-10 minutes for DNS propagation",
            "Send test mail through every affected ESP",
            "Watch authentication results for one hour",
        ],
        "verification_steps": [
            "The published TXT record matches the rollback record",
            "The record parses with at most 10 DNS lookups",
            "Test mail passes SPF at major mailbox providers",
        ],
        "triggers": triggers,
        "estimated_minutes": minutes,
        "affected_includes": sorted({c.include_domain for c in changes}),
    }
