"""
SQLAlchemy models for SPF Watch.

The persistence store consumed by the SPF core:
  DnsSettings, EspClassification, MonitoringConfig, MonitoringBaseline,
  FlatteningOperation, ChangeEvent

Ownership is carried as an opaque ``user_id`` string supplied by the
calling application; this package does not manage user accounts.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from spfwatch import db

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    """Return the current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# DnsSettings  (singleton row, id=1)
# ---------------------------------------------------------------------------


class DnsSettings(db.Model):
    """Global DNS resolver configuration (singleton - always id=1)."""

    __tablename__ = "dns_settings"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True, default=1)
    resolvers: db.Mapped[str] = db.mapped_column(
        db.Text,
        nullable=False,
        default=json.dumps(["8.8.8.8", "1.1.1.1", "9.9.9.9"]),
    )
    timeout_seconds: db.Mapped[float] = db.mapped_column(db.Float, default=5.0, nullable=False)
    check_concurrency: db.Mapped[int] = db.mapped_column(db.Integer, default=5, nullable=False)
    max_include_depth: db.Mapped[int] = db.mapped_column(db.Integer, default=10, nullable=False)
    esp_cache_ttl: db.Mapped[int] = db.mapped_column(db.Integer, default=3600, nullable=False)
    updated_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )

    def get_resolvers(self) -> list[str]:
        """Return the resolver list as a Python list."""
        return _load_json(self.resolvers, default=["8.8.8.8", "1.1.1.1"])

    def set_resolvers(self, resolver_list: list[str]) -> None:
        """Serialise and store *resolver_list*."""
        self.resolvers = json.dumps(resolver_list)

    def __repr__(self) -> str:
        return (
            f"<DnsSettings id={self.id} timeout={self.timeout_seconds}"
            f" concurrency={self.check_concurrency} depth={self.max_include_depth}>"
        )


# ---------------------------------------------------------------------------
# EspClassification
# ---------------------------------------------------------------------------


class EspClassification(db.Model):
    """Curated stability metadata for one ESP ``include:`` domain."""

    __tablename__ = "esp_classifications"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    include_domain: db.Mapped[str] = db.mapped_column(db.String(255), unique=True, nullable=False)
    esp_name: db.Mapped[str] = db.mapped_column(db.String(100), nullable=False)
    esp_type: db.Mapped[str] = db.mapped_column(
        db.String(50), default="unknown", nullable=False
    )  # transactional / marketing / enterprise / infrastructure / unknown
    is_stable: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    requires_monitoring: db.Mapped[bool] = db.mapped_column(db.Boolean, default=False, nullable=False)
    consolidation_safe: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    change_frequency: db.Mapped[str | None] = db.mapped_column(db.String(20), nullable=True)
    known_ip_ranges: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON list
    description: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    last_verified: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=True
    )
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )

    def get_known_ip_ranges(self) -> list:
        """Deserialise known_ip_ranges JSON, returning an empty list on failure."""
        return _load_json(self.known_ip_ranges, default=[])

    def __repr__(self) -> str:
        return (
            f"<EspClassification include_domain={self.include_domain!r}"
            f" esp={self.esp_name!r} stable={self.is_stable}>"
        )


# ---------------------------------------------------------------------------
# MonitoringConfig
# ---------------------------------------------------------------------------


class MonitoringConfig(db.Model):
    """Per-user monitoring settings for one domain."""

    __tablename__ = "monitoring_configs"
    __table_args__ = (
        db.UniqueConstraint("user_id", "domain", name="uq_monitoring_user_domain"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    user_id: db.Mapped[str] = db.mapped_column(db.String(64), nullable=False)
    domain: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    monitoring_enabled: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    check_interval: db.Mapped[str] = db.mapped_column(
        db.String(10), default="daily", nullable=False
    )  # hourly / daily / weekly
    auto_update: db.Mapped[bool] = db.mapped_column(db.Boolean, default=False, nullable=False)
    sensitivity: db.Mapped[str] = db.mapped_column(
        db.String(10), default="medium", nullable=False
    )  # low / medium / high
    last_checked_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    last_change_detected: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    last_status: db.Mapped[str] = db.mapped_column(
        db.String(20), default="pending", nullable=False
    )  # pending / healthy / changed / error
    consecutive_failures: db.Mapped[int] = db.mapped_column(db.Integer, default=0, nullable=False)
    safeguard_preset: db.Mapped[str] = db.mapped_column(
        db.String(20), default="balanced", nullable=False
    )  # conservative / balanced / aggressive
    # Set while a check of this domain is in flight (any process).
    running_since: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<MonitoringConfig user_id={self.user_id!r} domain={self.domain!r}"
            f" interval={self.check_interval!r} status={self.last_status!r}>"
        )


# ---------------------------------------------------------------------------
# MonitoringBaseline
# ---------------------------------------------------------------------------


class MonitoringBaseline(db.Model):
    """Last known resolved address set of one include for one user's domain."""

    __tablename__ = "monitoring_baselines"
    __table_args__ = (
        db.UniqueConstraint(
            "user_id", "domain", "include_domain", name="uq_baseline_user_domain_include"
        ),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    user_id: db.Mapped[str] = db.mapped_column(db.String(64), nullable=False)
    domain: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    include_domain: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    baseline_ips: db.Mapped[str] = db.mapped_column(db.Text, nullable=False, default="[]")
    monitoring_enabled: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    last_verified: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    # Bumped on every UPDATE; a write based on an outdated read raises StaleDataError.
    version: db.Mapped[int] = db.mapped_column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def get_baseline_ips(self) -> list[str]:
        """Deserialise baseline_ips JSON, returning an empty list on failure."""
        return _load_json(self.baseline_ips, default=[])

    def set_baseline_ips(self, ips: list[str]) -> None:
        """Serialise and store *ips* in sorted order."""
        self.baseline_ips = json.dumps(sorted(ips))

    def __repr__(self) -> str:
        return (
            f"<MonitoringBaseline domain={self.domain!r}"
            f" include={self.include_domain!r} enabled={self.monitoring_enabled}>"
        )


# ---------------------------------------------------------------------------
# FlatteningOperation
# ---------------------------------------------------------------------------


class FlatteningOperation(db.Model):
    """History entry for one flattening run requested by a user."""

    __tablename__ = "flattening_operations"
    __table_args__ = (
        db.Index("ix_flattening_user_domain_created", "user_id", "domain", "created_at"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    user_id: db.Mapped[str] = db.mapped_column(db.String(64), nullable=False)
    domain: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    trigger_type: db.Mapped[str] = db.mapped_column(
        db.String(20), default="manual", nullable=False
    )  # manual / auto_update
    status: db.Mapped[str] = db.mapped_column(
        db.String(20), default="pending", nullable=False
    )  # pending / completed / reverted / failed

    original_record: db.Mapped[str] = db.mapped_column(db.Text, nullable=False)
    original_lookup_count: db.Mapped[int] = db.mapped_column(db.Integer, nullable=False)
    target_includes: db.Mapped[str] = db.mapped_column(db.Text, nullable=False)  # JSON list
    flattening_options: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON

    flattened_record: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    new_lookup_count: db.Mapped[int | None] = db.mapped_column(db.Integer, nullable=True)
    resolved_ips: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON list
    ip_count: db.Mapped[int] = db.mapped_column(db.Integer, default=0, nullable=False)

    warnings: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON list
    errors: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON list
    rollback_plan: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON

    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    completed_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    reverted_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )

    def get_target_includes(self) -> list:
        """Deserialise target_includes JSON, returning an empty list on failure."""
        return _load_json(self.target_includes, default=[])

    def get_flattening_options(self) -> dict:
        """Deserialise flattening_options JSON, returning an empty dict on failure."""
        return _load_json(self.flattening_options)

    def get_resolved_ips(self) -> list:
        """Deserialise resolved_ips JSON, returning an empty list on failure."""
        return _load_json(self.resolved_ips, default=[])

    def get_warnings(self) -> list:
        """Deserialise warnings JSON, returning an empty list on failure."""
        return _load_json(self.warnings, default=[])

    def get_errors(self) -> list:
        """Deserialise errors JSON, returning an empty list on failure."""
        return _load_json(self.errors, default=[])

    def get_rollback_plan(self) -> dict:
        """Deserialise rollback_plan JSON, returning an empty dict when unset."""
        return _load_json(self.rollback_plan)

    def __repr__(self) -> str:
        return (
            f"<FlatteningOperation id={self.id} domain={self.domain!r}"
            f" status={self.status!r} lookups={self.original_lookup_count}->{self.new_lookup_count}>"
        )


# ---------------------------------------------------------------------------
# ChangeEvent  (append-only)
# ---------------------------------------------------------------------------


class ChangeEvent(db.Model):
    """A detected drift in the addresses an include resolves to."""

    __tablename__ = "change_events"
    __table_args__ = (
        db.Index("ix_change_events_user_domain_detected", "user_id", "domain", "detected_at"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    user_id: db.Mapped[str] = db.mapped_column(db.String(64), nullable=False)
    domain: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    include_domain: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    esp_name: db.Mapped[str | None] = db.mapped_column(db.String(100), nullable=True)
    change_type: db.Mapped[str] = db.mapped_column(db.String(20), nullable=False)  # added / removed / modified
    previous_ips: db.Mapped[str] = db.mapped_column(db.Text, nullable=False)  # JSON list
    current_ips: db.Mapped[str] = db.mapped_column(db.Text, nullable=False)  # JSON list
    impact: db.Mapped[str] = db.mapped_column(db.String(20), nullable=False)  # low / medium / high / critical
    auto_update_safe: db.Mapped[bool] = db.mapped_column(db.Boolean, default=False, nullable=False)
    risk_factors: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON list
    recommended_action: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    auto_updated: db.Mapped[bool] = db.mapped_column(db.Boolean, default=False, nullable=False)
    detected_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )

    def get_previous_ips(self) -> list:
        """Deserialise previous_ips JSON, returning an empty list on failure."""
        return _load_json(self.previous_ips, default=[])

    def get_current_ips(self) -> list:
        """Deserialise current_ips JSON, returning an empty list on failure."""
        return _load_json(self.current_ips, default=[])

    def get_risk_factors(self) -> list:
        """Deserialise risk_factors JSON, returning an empty list on failure."""
        return _load_json(self.risk_factors, default=[])

    def __repr__(self) -> str:
        return (
            f"<ChangeEvent id={self.id} domain={self.domain!r}"
            f" include={self.include_domain!r} type={self.change_type!r}"
            f" impact={self.impact!r}>"
        )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _load_json(value: str | None, *, default: object = None) -> object:
    """Safely deserialise a JSON string, returning *default* on any error."""
    if default is None:
        default = {}
    if not value:
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default
