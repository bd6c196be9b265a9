"""
Unit tests for spfwatch/spf/esp.py
"""

from __future__ import annotations

import json

import pytest

from spfwatch import db
from spfwatch.models import EspClassification
from spfwatch.spf.cache import TTLCache
from spfwatch.spf.esp import (
    UNKNOWN_ESP_NAME,
    EspClassifier,
    candidate_domains,
    is_common_esp,
)
from spfwatch.spf.parser import parse_spf_string


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def test_candidate_domains_most_specific_first():
    assert candidate_domains("u1.wl.SendGrid.net.") == [
        "u1.wl.sendgrid.net",
        "wl.sendgrid.net",
        "sendgrid.net",
    ]


def test_known_esp_exact_match(classifier):
    profile = classifier.get_stability_profile("_spf.google.com")

    assert profile.is_known is True
    assert profile.esp_name == "Google Workspace"
    assert profile.is_stable is True
    assert profile.auto_update_safe is True
    assert profile.check_frequency == "weekly"
    assert profile.change_frequency == "rare"


def test_known_esp_suffix_match(classifier):
    profile = classifier.get_stability_profile("u12345.wl.sendgrid.net")

    assert profile.esp_name == "SendGrid"
    assert profile.include_domain == "u12345.wl.sendgrid.net"


def test_unstable_esp_profile(classifier):
    profile = classifier.get_stability_profile("_spf.hubspot.com")

    assert profile.is_stable is False
    assert profile.auto_update_safe is False
    assert profile.check_frequency == "daily"
    assert profile.change_frequency == "weekly"


def test_unknown_include_is_conservative(classifier):
    profile = classifier.get_stability_profile("spf.unknown-sender.test")

    assert profile.is_known is False
    assert profile.esp_name == UNKNOWN_ESP_NAME
    assert profile.is_stable is False
    assert profile.requires_monitoring is True
    assert profile.auto_update_safe is False


def test_is_common_esp():
    assert is_common_esp("spf.protection.outlook.com")
    assert not is_common_esp("example.com")


# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------


def test_profiles_are_cached(classifier):
    first = classifier.get_stability_profile("_spf.google.com")
    second = classifier.get_stability_profile("_SPF.google.com.")

    assert first is second


def test_injected_cache_is_used():
    cache = TTLCache(ttl=10)
    classifier = EspClassifier(cache=cache, use_store=False)

    classifier.get_stability_profile("amazonses.com")

    assert cache.get(("esp_profile", "amazonses.com")).esp_name == "Amazon SES"


def test_invalidate_drops_cached_profile(classifier):
    classifier.get_stability_profile("amazonses.com")
    classifier.invalidate("amazonses.com")

    assert classifier.cache.get(("esp_profile", "amazonses.com")) is None


# ---------------------------------------------------------------------------
# Stored classifications
# ---------------------------------------------------------------------------


def test_stored_row_overrides_builtin_table(app):
    db.session.add(EspClassification(
        include_domain="_spf.google.com",
        esp_name="Google (pinned)",
        esp_type="enterprise",
        is_stable=False,
        requires_monitoring=True,
        consolidation_safe=False,
        change_frequency="daily",
        known_ip_ranges=json.dumps(["35.190.247.0/24"]),
    ))
    db.session.commit()

    profile = EspClassifier().get_stability_profile("_spf.google.com")

    assert profile.esp_name == "Google (pinned)"
    assert profile.is_stable is False
    assert profile.change_frequency == "daily"
    assert profile.known_ip_ranges == ("35.190.247.0/24",)


def test_stored_parent_domain_matches_subdomain(app):
    db.session.add(EspClassification(
        include_domain="sender.test",
        esp_name="Sender",
        esp_type="transactional",
    ))
    db.session.commit()

    profile = EspClassifier().get_stability_profile("spf.eu.sender.test")

    assert profile.is_known is True
    assert profile.esp_name == "Sender"


# ---------------------------------------------------------------------------
# Monitoring recommendations
# ---------------------------------------------------------------------------


def test_recommendations_for_stable_esps(classifier):
    record = parse_spf_string("v=spf1 include:_spf.google.com include:amazonses.com -all")

    recommendations = classifier.monitoring_recommendations(record)

    assert recommendations["should_monitor"] is True
    assert recommendations["recommended_interval"] == "weekly"
    assert recommendations["auto_update_safe"] is True
    assert recommendations["risk_factors"] == []


@pytest.mark.parametrize(
    "include, expected_risk",
    [
        ("spf.unknown-sender.test", "Unknown ESP"),
        ("_spf.hubspot.com", "unstable"),
    ],
)
def test_recommendations_for_risky_includes(classifier, include, expected_risk):
    record = parse_spf_string(f"v=spf1 include:{include} -all")

    recommendations = classifier.monitoring_recommendations(record)

    assert recommendations["recommended_interval"] == "daily"
    assert recommendations["auto_update_safe"] is False
    assert any(expected_risk in r for r in recommendations["risk_factors"])


def test_recommendations_for_invalid_record(classifier):
    recommendations = classifier.monitoring_recommendations(parse_spf_string(""))

    assert recommendations["should_monitor"] is False
    assert recommendations["auto_update_safe"] is False
