"""
Scheduled SPF monitoring runs.

Runs the change monitor for every enabled MonitoringConfig on one interval
tier (hourly / daily / weekly).  Handles:
- Loading resolver settings and concurrency from DnsSettings
- Checking domains with individual error isolation
- Skipping a domain whose previous run is still in flight, in this or any
  other process, via a claim stored on the MonitoringConfig row
- Concurrent batch checking via ThreadPoolExecutor
- Auto-update hand-off: when a domain has ``auto_update`` set and a check
  produced an auto-update-safe change, the safeguard preset is consulted,
  the record is re-flattened and a pending FlatteningOperation carrying a
  rollback plan is stored for approval.  Nothing is ever published to DNS.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from spfwatch import db
from spfwatch.models import ChangeEvent, DnsSettings, FlatteningOperation, MonitoringConfig
from spfwatch.spf.esp import EspClassifier
from spfwatch.spf.flattener import SpfFlattener
from spfwatch.spf.history import latest_completed, record_operation
from spfwatch.spf.monitor import (
    CHECK_INTERVALS,
    InvalidSpfRecordError,
    SpfMonitor,
    next_check_at,
)
from spfwatch.spf.parser import parse_spf_record, parse_spf_string
from spfwatch.spf.resolver import DnsResolver, load_dns_settings
from spfwatch.spf.safeguards import evaluate_auto_update, get_policy, rollback_plan
from spfwatch.spf.types import FlatteningOptions, MonitoringResult

logger = logging.getLogger(__name__)

__all__ = [
    "run_scheduled_checks",
    "run_domain_check",
    "next_check_at",
    "claim_domain_run",
    "release_domain_run",
]

# A claim older than this belongs to a run that died without releasing it.
_DEFAULT_STALE_SECONDS = 6 * 60 * 60

# ---------------------------------------------------------------------------
# Run claims
# ---------------------------------------------------------------------------


def claim_domain_run(config: MonitoringConfig, now: datetime | None = None) -> datetime | None:
    """Mark *config* as being checked; return the claim token, or None if taken.

    The claim is a conditional UPDATE of ``running_since``, so only one of
    several concurrent callers (threads or processes) gets it.
    """
    now = now or datetime.now(timezone.utc)
    stale = timedelta(seconds=current_app.config.get("SPF_RUN_STALE_SECONDS", _DEFAULT_STALE_SECONDS))
    try:
        claimed = db.session.execute(
            db.update(MonitoringConfig)
            .where(
                MonitoringConfig.id == config.id,
                db.or_(
                    MonitoringConfig.running_since.is_(None),
                    MonitoringConfig.running_since < now - stale,
                ),
            )
            .values(running_since=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.session.commit()
    except SQLAlchemyError:
        logger.exception("Failed to claim the monitoring run of %s", config.domain)
        db.session.rollback()
        return None
    return now if claimed == 1 else None


def release_domain_run(config_id: int, token: datetime) -> None:
    """Clear the claim taken with *token*; a claim taken over since is left alone."""
    try:
        db.session.execute(
            db.update(MonitoringConfig)
            .where(MonitoringConfig.id == config_id, MonitoringConfig.running_since == token)
            .values(running_since=None)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError:
        logger.exception("Failed to release the monitoring run of config %d", config_id)
        db.session.rollback()


# ---------------------------------------------------------------------------
# Single domain
# ---------------------------------------------------------------------------


def run_domain_check(
    config: MonitoringConfig,
    settings: DnsSettings | None = None,
    resolver=None,
    classifier: EspClassifier | None = None,
) -> MonitoringResult | None:
    """Check one configured domain, then hand off to auto-update if eligible.

    Returns None when a run for the same domain is already in flight.
    """
    settings = settings or load_dns_settings()
    config_id = config.id
    token = claim_domain_run(config)
    if token is None:
        logger.info(
            "Skipping %s for user %s: previous run still in progress",
            config.domain, config.user_id,
        )
        return None

    try:
        resolver = resolver or DnsResolver(settings)
        classifier = classifier or EspClassifier(ttl=settings.esp_cache_ttl or 3600)
        monitor = SpfMonitor(
            config.user_id,
            resolver,
            classifier,
            max_workers=settings.check_concurrency or 5,
        )
        try:
            result = monitor.check_domain(config.domain, max_depth=settings.max_include_depth or 10)
        except InvalidSpfRecordError as exc:
            logger.warning("Monitoring check failed for %s: %s", config.domain, exc)
            return MonitoringResult(
                domain=config.domain,
                status="error",
                errors=tuple(exc.errors),
                next_check=next_check_at(config.check_interval),
            )

        if config.auto_update and result.auto_update_eligible:
            _auto_update(config, result, resolver, classifier, settings)
        return result
    finally:
        release_domain_run(config_id, token)


def _auto_update(
    config: MonitoringConfig,
    result: MonitoringResult,
    resolver,
    classifier: EspClassifier,
    settings: DnsSettings,
) -> FlatteningOperation | None:
    """Re-flatten after safe changes and store a pending operation.

    The base record is the original record of the last approved flattening
    (so previously flattened includes are flattened again with their new
    addresses), or the live record when nothing was flattened before.
    Nothing is stored when the domain's safeguard preset rejects the update.
    """
    safe_changes = [e for e in result.changes if e.auto_update_safe]
    decision = evaluate_auto_update(
        config.user_id, config.domain, safe_changes, get_policy(config.safeguard_preset),
    )
    if not decision.approved:
        logger.info(
            "Auto-update for %s held back by safeguards: %s",
            config.domain, "; ".join(decision.reasons),
        )
        return None

    safe_includes = [e.include_domain for e in safe_changes]
    previous = latest_completed(config.user_id, config.domain)
    if previous is not None:
        record = parse_spf_string(previous.original_record, config.domain)
        targets = list(dict.fromkeys(previous.get_target_includes() + safe_includes))
        options = FlatteningOptions.from_dict(previous.get_flattening_options())
    else:
        record = parse_spf_record(config.domain, resolver)
        targets = safe_includes
        options = FlatteningOptions(max_depth=settings.max_include_depth or 10)

    targets = [t for t in targets if t in {i.lower() for i in record.includes}]
    if not targets:
        logger.info("Auto-update for %s skipped: no flattenable includes", config.domain)
        return None

    flattening = SpfFlattener(resolver, classifier).flatten(record, targets, options)
    plan = None
    if flattening.success:
        plan = rollback_plan(config.domain, record.raw, flattening.flattened_record, safe_changes)
    try:
        operation = record_operation(
            config.user_id, config.domain, record, flattening, flattening.flattened_includes, options,
            trigger_type="auto_update",
            rollback=plan,
        )
    except SQLAlchemyError:
        return None

    if flattening.success:
        rows = db.session.execute(
            db.select(ChangeEvent).where(
                ChangeEvent.user_id == config.user_id,
                ChangeEvent.domain == config.domain,
                ChangeEvent.include_domain.in_(safe_includes),
                ChangeEvent.auto_update_safe == True,  # noqa: E712
                ChangeEvent.auto_updated == False,  # noqa: E712
            )
        ).scalars()
        for row in rows:
            row.auto_updated = True
        try:
            db.session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to flag change events of %s as auto-updated", config.domain)
            db.session.rollback()

    logger.info(
        "Auto-update for %s stored operation %d (status=%s)",
        config.domain, operation.id, operation.status,
    )
    return operation


# ---------------------------------------------------------------------------
# Batch runs
# ---------------------------------------------------------------------------


def run_scheduled_checks(
    interval: str,
    domain: str | None = None,
    user_id: str | None = None,
    resolver=None,
) -> list[MonitoringResult]:
    """Check every enabled domain on the *interval* tier.

    Reads ``check_concurrency`` from DnsSettings to decide how many domains
    to check at once.  When concurrency is 1, domains run sequentially.

    Args:
        interval: "hourly", "daily" or "weekly".
        domain: Only check this domain.
        user_id: Only check this user's domains.
        resolver: Resolver override (defaults to a DnsResolver per run).

    Returns:
        One MonitoringResult per domain checked; skipped domains are omitted.
    """
    if interval not in CHECK_INTERVALS:
        raise ValueError(f"Unknown check interval: {interval!r}")

    query = db.select(MonitoringConfig).where(
        MonitoringConfig.monitoring_enabled == True,  # noqa: E712
        MonitoringConfig.check_interval == interval,
    )
    if domain:
        query = query.where(MonitoringConfig.domain == domain.strip().lower().rstrip("."))
    if user_id:
        query = query.where(MonitoringConfig.user_id == user_id)
    configs = list(db.session.execute(query).scalars())

    settings = load_dns_settings()
    max_workers = max(1, min(settings.check_concurrency or 5, 10))
    total = len(configs)

    logger.info(
        "Starting %s SPF monitoring run for %d domain(s) (concurrency=%d)",
        interval, total, max_workers,
    )

    if max_workers == 1 or total <= 1:
        return _run_sequential(configs, settings, resolver)
    return _run_concurrent(configs, settings, resolver, max_workers)


def _run_sequential(
    configs: list[MonitoringConfig],
    settings: DnsSettings,
    resolver,
) -> list[MonitoringResult]:
    results: list[MonitoringResult] = []
    classifier = EspClassifier(ttl=settings.esp_cache_ttl or 3600)
    for config in configs:
        try:
            result = run_domain_check(config, settings, resolver, classifier)
        except Exception as exc:
            logger.exception("Monitoring check failed for %s: %s", config.domain, exc)
            db.session.rollback()
            continue
        if result is not None:
            results.append(result)
    logger.info("Monitoring run complete: %d/%d domains checked", len(results), len(configs))
    return results


def _run_concurrent(
    configs: list[MonitoringConfig],
    settings: DnsSettings,
    resolver,
    max_workers: int,
) -> list[MonitoringResult]:
    """Check domains in parallel using a thread pool.

    Each worker runs inside its own Flask application context so that
    database sessions are scoped per thread.
    """
    app = current_app._get_current_object()
    config_ids = [c.id for c in configs]
    classifier = EspClassifier(ttl=settings.esp_cache_ttl or 3600)
    results: list[MonitoringResult] = []
    skipped = 0
    start = time.monotonic()

    def _check_one(config_id: int) -> MonitoringResult | None:
        with app.app_context():
            try:
                config = db.session.get(MonitoringConfig, config_id)
                if config is None or not config.monitoring_enabled:
                    return None
                worker_settings = load_dns_settings()
                return run_domain_check(config, worker_settings, resolver, classifier)
            except Exception as exc:
                logger.exception("Monitoring check failed for config %d: %s", config_id, exc)
                db.session.rollback()
                return None

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_id = {executor.submit(_check_one, cid): cid for cid in config_ids}
        for future in as_completed(future_to_id):
            result = future.result()
            if result is not None:
                results.append(result)
            else:
                skipped += 1

    logger.info(
        "Monitoring run complete: %d/%d domains checked (%d skipped or failed) in %.1fs",
        len(results), len(configs), skipped, time.monotonic() - start,
    )
    return results
