"""
ESP (Email Service Provider) stability classification.

Maps an ``include:`` target domain to an ESPStabilityProfile:
- Exact, then parent-domain (suffix) matching
- Stored EspClassification rows take precedence over the built-in table
- Conservative "Unknown ESP" profile when nothing matches
- Profiles cached through an injected TTL cache (default one hour)

Classification is advisory.  It never blocks flattening; it only decides
whether the change monitor may allow unattended updates.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from spfwatch.models import EspClassification
from spfwatch.spf.cache import TTLCache
from spfwatch.spf.types import ESPStabilityProfile, SPFRecord

logger = logging.getLogger(__name__)

UNKNOWN_ESP_NAME = "Unknown ESP"

# ---------------------------------------------------------------------------
# Built-in classification table
# ---------------------------------------------------------------------------

# include domain -> (esp_name, esp_type, is_stable, requires_monitoring,
#                    consolidation_safe)
BUILTIN_ESPS: dict[str, tuple[str, str, bool, bool, bool]] = {
    "_spf.google.com": ("Google Workspace", "enterprise", True, False, True),
    "spf.protection.outlook.com": ("Microsoft 365", "enterprise", True, False, True),
    "include.mailgun.org": ("Mailgun", "transactional", True, True, True),
    "mailgun.org": ("Mailgun", "transactional", True, True, True),
    "_spf.mailchannels.net": ("MailChannels", "infrastructure", True, False, True),
    "spf.mandrillapp.com": ("Mandrill", "transactional", True, True, True),
    "mandrillapp.com": ("Mandrill", "transactional", True, True, True),
    "servers.mcsv.net": ("Mailchimp", "marketing", False, True, False),
    "_spf.createsend.com": ("Campaign Monitor", "marketing", True, True, True),
    "spf.constantcontact.com": ("Constant Contact", "marketing", False, True, False),
    "_spf.salesforce.com": ("Salesforce", "enterprise", True, False, True),
    "mail.zendesk.com": ("Zendesk", "enterprise", True, False, True),
    "sendgrid.net": ("SendGrid", "transactional", True, True, True),
    "amazonses.com": ("Amazon SES", "transactional", True, False, True),
    "_spf.hubspot.com": ("HubSpot", "marketing", False, True, False),
    "hubspotemail.net": ("HubSpot", "marketing", False, True, False),
    "zoho.com": ("Zoho Mail", "enterprise", True, False, True),
    "zoho.eu": ("Zoho Mail", "enterprise", True, False, True),
}


def candidate_domains(include_domain: str) -> list[str]:
    """Return *include_domain* followed by its parents, most specific first.

    ``"u1.wl.sendgrid.net"`` -> ``["u1.wl.sendgrid.net", "wl.sendgrid.net",
    "sendgrid.net"]``.  Top-level labels are never candidates.
    """
    labels = include_domain.strip().lower().rstrip(".").split(".")
    return [".".join(labels[i:]) for i in range(len(labels) - 1)]


def builtin_entry(include_domain: str) -> tuple[str, dict[str, Any]] | None:
    """Return the matched key and attributes from the built-in table."""
    for candidate in candidate_domains(include_domain):
        entry = BUILTIN_ESPS.get(candidate)
        if entry is not None:
            name, esp_type, stable, monitoring, safe = entry
            return candidate, {
                "esp_name": name,
                "esp_type": esp_type,
                "is_stable": stable,
                "requires_monitoring": monitoring,
                "consolidation_safe": safe,
            }
    return None


def is_common_esp(include_domain: str) -> bool:
    return builtin_entry(include_domain) is not None


def build_profile(
    include_domain: str,
    stored: EspClassification | None = None,
    builtin: dict[str, Any] | None = None,
) -> ESPStabilityProfile:
    """Merge classification sources into one fully-populated profile.

    Precedence, highest first: the stored EspClassification row, the
    built-in table entry, then the conservative unknown default.  Check
    frequency is weekly for stable ESPs and daily otherwise; change
    frequency is rare for stable ESPs and weekly otherwise unless the
    source states one.
    """
    if stored is not None:
        attrs: dict[str, Any] = {
            "esp_name": stored.esp_name,
            "esp_type": stored.esp_type or "unknown",
            "is_stable": bool(stored.is_stable),
            "requires_monitoring": bool(stored.requires_monitoring),
            "consolidation_safe": bool(stored.consolidation_safe),
            "change_frequency": stored.change_frequency,
            "known_ip_ranges": tuple(stored.get_known_ip_ranges()),
            "description": stored.description or "",
        }
    elif builtin is not None:
        attrs = dict(builtin)
    else:
        return ESPStabilityProfile(
            include_domain=include_domain,
            esp_name=UNKNOWN_ESP_NAME,
            esp_type="unknown",
            is_stable=False,
            requires_monitoring=True,
            check_frequency="daily",
            change_frequency="weekly",
            auto_update_safe=False,
            is_known=False,
        )

    stable = attrs["is_stable"]
    return ESPStabilityProfile(
        include_domain=include_domain,
        esp_name=attrs["esp_name"],
        esp_type=attrs["esp_type"],
        is_stable=stable,
        requires_monitoring=attrs["requires_monitoring"],
        check_frequency="weekly" if stable else "daily",
        change_frequency=attrs.get("change_frequency") or ("rare" if stable else "weekly"),
        auto_update_safe=attrs["consolidation_safe"],
        known_ip_ranges=attrs.get("known_ip_ranges", ()),
        is_known=True,
        description=attrs.get("description", ""),
    )


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class EspClassifier:
    """Resolve ESPStabilityProfile objects with caching.

    Args:
        cache: Object exposing get/set/invalidate; a TTLCache by default.
        ttl: Cache lifetime in seconds for the default cache.
        use_store: Query EspClassification rows (requires an app context).
    """

    def __init__(self, cache=None, ttl: float = 3600.0, use_store: bool = True) -> None:
        self.cache = cache if cache is not None else TTLCache(ttl=ttl)
        self.use_store = use_store

    def get_stability_profile(self, include_domain: str) -> ESPStabilityProfile:
        include_domain = include_domain.strip().lower().rstrip(".")
        cache_key = ("esp_profile", include_domain)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        stored = self._stored_classification(include_domain)
        builtin = builtin_entry(include_domain)
        profile = build_profile(
            include_domain,
            stored=stored,
            builtin=builtin[1] if builtin else None,
        )
        logger.debug(
            "ESP profile for %s: %s (stable=%s, auto_update_safe=%s)",
            include_domain, profile.esp_name, profile.is_stable, profile.auto_update_safe,
        )
        self.cache.set(cache_key, profile)
        return profile

    def invalidate(self, include_domain: str | None = None) -> None:
        if include_domain is None:
            self.cache.invalidate()
        else:
            self.cache.invalidate(("esp_profile", include_domain.strip().lower().rstrip(".")))

    def monitoring_recommendations(self, record: SPFRecord) -> dict[str, Any]:
        """Summarise whether and how often the includes of *record* need watching.

        Returns:
            A dict with keys: should_monitor, recommended_interval,
            risk_factors, auto_update_safe.
        """
        if not record.is_valid:
            return {
                "should_monitor": False,
                "recommended_interval": "daily",
                "risk_factors": ["Invalid SPF record"],
                "auto_update_safe": False,
            }

        risk_factors: list[str] = []
        interval = "weekly"
        any_unsafe = False

        for include_domain in record.includes:
            profile = self.get_stability_profile(include_domain)
            if not profile.is_known:
                risk_factors.append(f"Unknown ESP: {include_domain}")
                interval = "daily"
                any_unsafe = True
                continue
            if not profile.is_stable:
                risk_factors.append(f"{profile.esp_name} is unstable")
                interval = "daily"
            if profile.requires_monitoring:
                risk_factors.append(f"{profile.esp_name} requires active monitoring")
                interval = "daily"
            if not profile.auto_update_safe:
                any_unsafe = True
                risk_factors.append(f"{profile.esp_name} not safe for automatic updates")

        if record.effective_lookups >= 8:
            risk_factors.append("High DNS lookup count")
            interval = "daily"

        return {
            "should_monitor": bool(record.includes),
            "recommended_interval": interval,
            "risk_factors": risk_factors,
            "auto_update_safe": not any_unsafe and not risk_factors,
        }

    def _stored_classification(self, include_domain: str) -> EspClassification | None:
        """Return the most specific stored row, or None (also on store failure)."""
        if not self.use_store:
            return None

        from spfwatch import db  # noqa: PLC0415

        candidates = candidate_domains(include_domain)
        if not candidates:
            return None
        try:
            rows = db.session.execute(
                db.select(EspClassification).where(
                    EspClassification.include_domain.in_(candidates)
                )
            ).scalars().all()
        except SQLAlchemyError:
            logger.exception(
                "ESP classification lookup failed for %s; using built-in table",
                include_domain,
            )
            db.session.rollback()
            return None

        by_domain = {row.include_domain: row for row in rows}
        for candidate in candidates:
            if candidate in by_domain:
                return by_domain[candidate]
        return None
