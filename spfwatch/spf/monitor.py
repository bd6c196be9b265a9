"""
SPF include change monitoring.

Compares the addresses each ``include:`` of a domain resolves to against
the stored MonitoringBaseline and records drift as ChangeEvent rows.

Per (user, domain, include) state machine:
  no baseline -> baseline established -> healthy | changed | error

- First successful resolution stores the baseline and emits nothing.
- An identical address set leaves the baseline untouched.
- A different set emits an IPChangeEvent and replaces the baseline.
- A failed resolution leaves the baseline untouched and is reported.

Includes of one domain are resolved concurrently.  The baseline
read-diff-write of each include runs under a per-key lock so two checks of
the same include in one process never interleave.  Across processes the
baseline row is versioned: the read inside the lock always refreshes the
row, and a write based on a version another checker has since replaced is
rolled back and diffed again against the newer baseline.  The monitor only
signals auto-update eligibility; re-flattening is done by the engine.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import threading
import weakref
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Iterable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from spfwatch import db
from spfwatch.models import ChangeEvent, MonitoringBaseline, MonitoringConfig
from spfwatch.spf.esp import EspClassifier
from spfwatch.spf.flattener import SpfFlattener
from spfwatch.spf.history import latest_completed
from spfwatch.spf.parser import parse_spf_record
from spfwatch.spf.result import Err, Ok, Result
from spfwatch.spf.types import (
    ESPStabilityProfile,
    FlatteningOptions,
    IPChangeEvent,
    MonitoringResult,
)

logger = logging.getLogger(__name__)

# A change is at least "medium" impact once added + removed exceeds this.
SENSITIVITY_THRESHOLDS: dict[str, int] = {"low": 5, "medium": 3, "high": 1}

CHECK_INTERVALS: dict[str, timedelta] = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
}

_DEFAULT_WORKERS = 5

# Attempts at a baseline write before giving up on a concurrently changing row.
_BASELINE_ATTEMPTS = 3


class InvalidSpfRecordError(ValueError):
    """The monitored domain's own SPF record is missing or invalid."""

    def __init__(self, domain: str, errors: Iterable[str]) -> None:
        self.domain = domain
        self.errors = list(errors)
        super().__init__(f"Invalid SPF record for {domain}: {', '.join(self.errors)}")


def next_check_at(interval: str, checked_at: datetime | None = None) -> datetime:
    """Return when a domain on the *interval* tier is due again."""
    checked_at = checked_at or datetime.now(timezone.utc)
    return checked_at + CHECK_INTERVALS.get(interval, CHECK_INTERVALS["daily"])


# ---------------------------------------------------------------------------
# Change assessment
# ---------------------------------------------------------------------------


def diff_ips(previous: Iterable[str], current: Iterable[str]) -> tuple[list[str], list[str]]:
    """Return ``(added, removed)`` between two address sets, sorted."""
    previous_set = set(previous)
    current_set = set(current)
    return sorted(current_set - previous_set), sorted(previous_set - current_set)


def classify_change(added: list[str], removed: list[str]) -> str | None:
    if added and not removed:
        return "added"
    if removed and not added:
        return "removed"
    if added and removed:
        return "modified"
    return None


def assess_impact(
    added: list[str],
    removed: list[str],
    profile: ESPStabilityProfile,
    sensitivity: str = "medium",
) -> str:
    """Rate a change as low / medium / high / critical."""
    total = len(added) + len(removed)
    if len(removed) > 5 and profile.is_stable:
        return "critical"
    if removed and not profile.is_stable:
        return "high"
    if total > 10 and profile.is_stable:
        return "high"
    threshold = SENSITIVITY_THRESHOLDS.get(sensitivity, SENSITIVITY_THRESHOLDS["medium"])
    if total > threshold:
        return "medium"
    return "low"


def is_auto_update_safe(change_type: str, impact: str, profile: ESPStabilityProfile) -> bool:
    if impact in ("high", "critical"):
        return False
    if not profile.auto_update_safe:
        return False
    if change_type == "removed":
        return profile.is_stable and impact == "low"
    return profile.is_stable and impact in ("low", "medium")


def identify_risk_factors(
    added: list[str],
    removed: list[str],
    profile: ESPStabilityProfile,
) -> list[str]:
    risks: list[str] = []
    if not profile.is_stable:
        risks.append("ESP marked as unstable")
    if not profile.auto_update_safe:
        risks.append("ESP not recommended for automatic updates")
    if removed:
        risks.append("IP addresses removed; mail from them may start failing SPF")
    if len(added) > 10:
        risks.append("Large number of new IPs; verify they belong to the ESP")
    if profile.change_frequency == "daily":
        risks.append("ESP changes its IP addresses frequently")
    return risks


def recommended_action(change_type: str, impact: str) -> str:
    if impact == "critical":
        return "Review immediately: many addresses were removed and SPF checks may start failing"
    if impact == "high":
        return "Review within 24 hours and watch for SPF authentication failures"
    if change_type == "added":
        if impact == "medium":
            return "Consider adding the new addresses to the SPF record after watching them for a few days"
        return "New addresses detected; they can be added to the SPF record"
    if change_type == "removed":
        return "Addresses were dropped by the ESP; confirm they are unused before removing them from SPF"
    return "Addresses changed; review the difference and update the SPF record"


def build_change_event(
    domain: str,
    include_domain: str,
    previous: Iterable[str],
    current: Iterable[str],
    profile: ESPStabilityProfile,
    sensitivity: str = "medium",
) -> IPChangeEvent | None:
    """Return the IPChangeEvent for a baseline difference, or None if unchanged."""
    previous = sorted(set(previous))
    current = sorted(set(current))
    added, removed = diff_ips(previous, current)
    change_type = classify_change(added, removed)
    if change_type is None:
        return None

    impact = assess_impact(added, removed, profile, sensitivity)
    return IPChangeEvent(
        domain=domain,
        include_domain=include_domain,
        esp_name=profile.esp_name,
        change_type=change_type,
        added=tuple(added),
        removed=tuple(removed),
        previous_ips=tuple(previous),
        current_ips=tuple(current),
        impact=impact,
        auto_update_safe=is_auto_update_safe(change_type, impact, profile),
        risk_factors=tuple(identify_risk_factors(added, removed, profile)),
        recommended_action=recommended_action(change_type, impact),
    )


# ---------------------------------------------------------------------------
# Per-key locks
# ---------------------------------------------------------------------------

# Entries disappear once no check holds or waits on the lock.
_key_locks: weakref.WeakValueDictionary[tuple[str, str, str], threading.Lock] = (
    weakref.WeakValueDictionary()
)
_key_locks_guard = threading.Lock()


def baseline_lock(user_id: str, domain: str, include_domain: str) -> threading.Lock:
    """Return the lock guarding one (user, domain, include) baseline.

    The caller must keep a reference to the returned lock while using it.
    """
    key = (user_id, domain, include_domain)
    with _key_locks_guard:
        lock = _key_locks.get(key)
        if lock is None:
            lock = _key_locks[key] = threading.Lock()
        return lock


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class SpfMonitor:
    """Check one user's domains for include drift.

    Args:
        user_id: Opaque owner id of the stored configuration and baselines.
        resolver: DnsResolver (or compatible).
        classifier: EspClassifier used for impact assessment.
        max_workers: Concurrent include resolutions per domain.
    """

    def __init__(
        self,
        user_id: str,
        resolver,
        classifier: EspClassifier | None = None,
        max_workers: int = _DEFAULT_WORKERS,
    ) -> None:
        self.user_id = user_id
        self.resolver = resolver
        self.classifier = classifier or EspClassifier()
        self.max_workers = max(1, max_workers)
        self._flattener = SpfFlattener(resolver, self.classifier)

    def check_domain_changes(self, domain: str) -> list[IPChangeEvent]:
        """Run one check of *domain* and return the change events it produced."""
        return list(self.check_domain(domain).changes)

    def check_domain(self, domain: str, max_depth: int = 10) -> MonitoringResult:
        """Run one monitoring check of *domain*.

        Raises:
            InvalidSpfRecordError: The domain's own SPF record is invalid.
        """
        domain = domain.strip().lower().rstrip(".")
        now = datetime.now(timezone.utc)
        config = self._get_or_create_config(domain)

        record = parse_spf_record(domain, self.resolver)
        if not record.is_valid:
            logger.warning("SPF record for %s is invalid: %s", domain, record.errors)
            self._finish(config, "error", now, changed=False)
            raise InvalidSpfRecordError(domain, record.errors)

        # Columns only: baseline rows are read inside the per-key lock.
        enabled = dict(
            db.session.execute(
                db.select(MonitoringBaseline.include_domain, MonitoringBaseline.monitoring_enabled)
                .where(
                    MonitoringBaseline.user_id == self.user_id,
                    MonitoringBaseline.domain == domain,
                )
            ).all()
        )
        # Includes already flattened into the live record stay monitored.
        flattened = latest_completed(self.user_id, domain)
        candidates = list(record.includes) + (flattened.get_target_includes() if flattened else [])
        includes = [
            d for d in dict.fromkeys(i.lower().rstrip(".") for i in candidates)
            if enabled.get(d, True)
        ]

        options = FlatteningOptions(max_depth=max_depth)
        resolved = self._resolve_all(includes, options)

        changes: list[IPChangeEvent] = []
        states: dict[str, str] = {}
        errors: list[str] = []

        for include_domain in includes:
            outcome = resolved[include_domain]
            if not outcome.ok:
                states[include_domain] = "error"
                errors.append(f"include:{include_domain}: {outcome.reason}")
                logger.warning("Could not resolve include:%s of %s: %s",
                               include_domain, domain, outcome.reason)
                continue

            with baseline_lock(self.user_id, domain, include_domain):
                state, event = self._update_baseline(
                    domain, include_domain, outcome.value, config.sensitivity, now, errors,
                )
            states[include_domain] = state
            if event is not None:
                changes.append(event)

        if includes and all(s == "error" for s in states.values()):
            status = "error"
        elif changes:
            status = "changed"
        else:
            status = "healthy"

        self._finish(config, status, now, changed=bool(changes), errors=errors)
        logger.info(
            "Checked %s for user %s: status=%s, %d change(s), %d error(s)",
            domain, self.user_id, status, len(changes), len(errors),
        )
        return MonitoringResult(
            domain=domain,
            status=status,
            changes=tuple(changes),
            include_states=states,
            errors=tuple(errors),
            checked_at=now,
            next_check=next_check_at(config.check_interval, now),
        )

    def resolve_include_ips(
        self,
        include_domain: str,
        options: FlatteningOptions | None = None,
    ) -> Result[list[str]]:
        """Resolve *include_domain* to its address set (single hosts bare)."""
        outcome = self._flattener.resolve_include(include_domain, options)
        if not outcome.ok:
            return outcome
        ips = []
        for text in outcome.value.networks:
            network = ipaddress.ip_network(text)
            if network.prefixlen == network.max_prefixlen:
                ips.append(str(network.network_address))
            else:
                ips.append(str(network))
        return Ok(sorted(ips))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve_all(
        self,
        includes: list[str],
        options: FlatteningOptions,
    ) -> dict[str, Result[list[str]]]:
        """Resolve every include; DNS only, no database access."""
        if len(includes) <= 1 or self.max_workers == 1:
            return {d: self._resolve_safe(d, options) for d in includes}

        workers = min(self.max_workers, len(includes))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {d: executor.submit(self._resolve_safe, d, options) for d in includes}
            return {d: future.result() for d, future in futures.items()}

    def _resolve_safe(self, include_domain: str, options: FlatteningOptions) -> Result[list[str]]:
        try:
            return self.resolve_include_ips(include_domain, options)
        except Exception as exc:
            logger.exception("Unexpected error resolving include:%s", include_domain)
            return Err(f"Unexpected error: {exc}")

    def _update_baseline(
        self,
        domain: str,
        include_domain: str,
        current: list[str],
        sensitivity: str,
        now: datetime,
        errors: list[str],
    ) -> tuple[str, IPChangeEvent | None]:
        """Diff *current* against the stored baseline and persist the outcome.

        Returns the include state and the change event, if any.  When another
        checker replaced the baseline between the read and the write, the
        write is rolled back and the diff repeated against the new baseline.
        Any other failed commit is rolled back and reported in *errors*; the
        computed event is still returned.
        """
        for attempt in range(1, _BASELINE_ATTEMPTS + 1):
            state, event = self._stage_baseline(domain, include_domain, current, sensitivity, now)
            try:
                db.session.commit()
            except (StaleDataError, IntegrityError):
                db.session.rollback()
                logger.info(
                    "Baseline of %s include:%s was replaced concurrently (attempt %d); diffing again",
                    domain, include_domain, attempt,
                )
                continue
            except SQLAlchemyError as exc:
                logger.exception("Failed to persist baseline for include:%s", include_domain)
                db.session.rollback()
                errors.append(f"Failed to persist baseline for include:{include_domain}: {exc}")

            if state == "baseline_established":
                logger.info("Baseline established for %s include:%s (%d IPs)",
                            domain, include_domain, len(current))
            elif event is not None:
                logger.info(
                    "Change detected for %s include:%s: %s (+%d/-%d, impact=%s, auto_update_safe=%s)",
                    domain, include_domain, event.change_type, len(event.added),
                    len(event.removed), event.impact, event.auto_update_safe,
                )
            return state, event

        errors.append(
            f"include:{include_domain}: baseline kept changing during the check; "
            f"gave up after {_BASELINE_ATTEMPTS} attempts"
        )
        return "error", None

    def _stage_baseline(
        self,
        domain: str,
        include_domain: str,
        current: list[str],
        sensitivity: str,
        now: datetime,
    ) -> tuple[str, IPChangeEvent | None]:
        """Read the baseline afresh and add the resulting writes to the session."""
        baseline = db.session.execute(
            db.select(MonitoringBaseline)
            .where(
                MonitoringBaseline.user_id == self.user_id,
                MonitoringBaseline.domain == domain,
                MonitoringBaseline.include_domain == include_domain,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().first()

        if baseline is None:
            baseline = MonitoringBaseline(
                user_id=self.user_id,
                domain=domain,
                include_domain=include_domain,
                monitoring_enabled=True,
                last_verified=now,
            )
            baseline.set_baseline_ips(current)
            db.session.add(baseline)
            return "baseline_established", None

        profile = self.classifier.get_stability_profile(include_domain)
        event = build_change_event(
            domain, include_domain, baseline.get_baseline_ips(), current, profile, sensitivity,
        )
        if event is None:
            return "healthy", None

        baseline.set_baseline_ips(current)
        baseline.last_verified = now
        db.session.add(ChangeEvent(
            user_id=self.user_id,
            domain=domain,
            include_domain=include_domain,
            esp_name=event.esp_name,
            change_type=event.change_type,
            previous_ips=_json_list(event.previous_ips),
            current_ips=_json_list(event.current_ips),
            impact=event.impact,
            auto_update_safe=event.auto_update_safe,
            risk_factors=_json_list(event.risk_factors),
            recommended_action=event.recommended_action,
            detected_at=event.timestamp,
        ))
        return "changed", event

    def _get_or_create_config(self, domain: str) -> MonitoringConfig:
        config = db.session.execute(
            db.select(MonitoringConfig).where(
                MonitoringConfig.user_id == self.user_id,
                MonitoringConfig.domain == domain,
            )
        ).scalars().first()
        if config is None:
            config = MonitoringConfig(user_id=self.user_id, domain=domain)
            db.session.add(config)
            self._commit([], f"monitoring config for {domain}")
        return config

    def _finish(
        self,
        config: MonitoringConfig,
        status: str,
        now: datetime,
        changed: bool,
        errors: list[str] | None = None,
    ) -> None:
        config.last_checked_at = now
        config.last_status = status
        if status == "error":
            config.consecutive_failures = (config.consecutive_failures or 0) + 1
        else:
            config.consecutive_failures = 0
        if changed:
            config.last_change_detected = now
        self._commit(errors if errors is not None else [], f"monitoring status for {config.domain}")

    @staticmethod
    def _commit(errors: list[str], what: str) -> bool:
        try:
            db.session.commit()
            return True
        except SQLAlchemyError as exc:
            logger.exception("Failed to persist %s", what)
            db.session.rollback()
            errors.append(f"Failed to persist {what}: {exc}")
            return False


def _json_list(values: Iterable[str]) -> str:
    return json.dumps(list(values))
