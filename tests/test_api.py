"""
Route tests for the SPF Watch JSON API.

All tests use the Flask test client; DNS is served by FakeResolver via a
patched DnsResolver, so no real lookups occur.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from spfwatch import db
from spfwatch.models import FlatteningOperation
from spfwatch.spf.resolver import DnsTimeout

RECORD = "v=spf1 include:_spf.google.com include:spf.sender.test ip4:192.0.2.10 -all"
ALICE = {"X-User-Id": "alice"}


@pytest.fixture(autouse=True)
def fake_dns_resolver(esp_dns):
    """Route every DnsResolver() built by the service to the fake DNS world."""
    esp_dns.txt["example.com"] = [RECORD]
    with patch("spfwatch.spf.service.DnsResolver", return_value=esp_dns):
        yield esp_dns


# ---------------------------------------------------------------------------
# Health and authentication
# ---------------------------------------------------------------------------


def test_health_is_public(client):
    response = client.get("/api/v1/health")

    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "ok"
    assert data["service"] == "SPF Watch"


def test_missing_user_header_returns_401(client):
    response = client.get("/api/v1/spf/example.com")

    assert response.status_code == 401
    assert response.get_json() == {"error": "Authentication required"}


def test_invalid_domain_returns_400(client):
    response = client.get("/api/v1/spf/not_a_domain", headers=ALICE)

    assert response.status_code == 400


# ---------------------------------------------------------------------------
# Record and analysis
# ---------------------------------------------------------------------------


def test_get_spf_record(client):
    response = client.get("/api/v1/spf/example.com", headers=ALICE)

    assert response.status_code == 200
    data = response.get_json()
    assert data["domain"] == "example.com"
    assert data["is_valid"] is True
    assert data["total_lookups"] == 2
    assert data["effective_lookups"] == 2
    assert data["mechanisms"][0] == {
        "type": "include",
        "qualifier": "+",
        "value": "_spf.google.com",
        "raw_text": "include:_spf.google.com",
        "lookup_cost": 1,
        "text": "include:_spf.google.com",
    }


def test_get_spf_record_reports_missing_record(client, fake_dns_resolver):
    fake_dns_resolver.txt["nospf.example"] = ["hello"]

    data = client.get("/api/v1/spf/nospf.example", headers=ALICE).get_json()

    assert data["is_valid"] is False
    assert data["errors"] == ["No SPF record found"]


def test_get_analysis(client):
    response = client.get("/api/v1/spf/example.com/analysis", headers=ALICE)

    assert response.status_code == 200
    data = response.get_json()
    assert data["risk_level"] == "low"
    assert data["breakdown"]["total"] == 2
    assert [s["mechanism"] for s in data["suggestions"]] == ["_spf.google.com"]
    assert data["record"]["is_valid"] is True


def test_get_esp_rating(client):
    response = client.get("/api/v1/esp/u1.wl.sendgrid.net", headers=ALICE)

    assert response.status_code == 200
    data = response.get_json()
    assert data["esp_name"] == "SendGrid"
    assert data["is_known"] is True


# ---------------------------------------------------------------------------
# Flattening
# ---------------------------------------------------------------------------


def test_flatten_stores_pending_operation(client, app):
    response = client.post(
        "/api/v1/spf/example.com/flatten",
        json={"includes": ["_spf.google.com"], "options": {"consolidate_cidr": False}},
        headers=ALICE,
    )

    assert response.status_code == 200
    data = response.get_json()
    assert data["success"] is True
    assert data["new_lookups"] == 1
    assert data["flattened_record"].startswith("v=spf1 ip4:35.190.247.0/24")

    operation = db.session.execute(db.select(FlatteningOperation)).scalars().one()
    assert operation.user_id == "alice"
    assert operation.status == "pending"
    assert operation.get_flattening_options()["consolidate_cidr"] is False


def test_flatten_without_saving(client):
    response = client.post(
        "/api/v1/spf/example.com/flatten",
        json={"includes": ["spf.sender.test"], "save": False},
        headers=ALICE,
    )

    assert response.status_code == 200
    assert db.session.execute(db.select(FlatteningOperation)).scalars().all() == []


def test_flatten_supplied_record(client):
    response = client.post(
        "/api/v1/spf/example.com/flatten",
        json={"includes": ["spf.sender.test"], "record": "v=spf1 include:spf.sender.test ~all", "save": False},
        headers=ALICE,
    )

    assert response.get_json()["flattened_record"] == "v=spf1 ip4:198.51.100.1 ip4:198.51.100.2 ~all"


def test_flatten_requires_includes(client):
    response = client.post("/api/v1/spf/example.com/flatten", json={}, headers=ALICE)

    assert response.status_code == 400


def test_flatten_stores_normalized_include_names(client):
    response = client.post(
        "/api/v1/spf/example.com/flatten",
        json={"includes": ["include:_SPF.Google.com."]},
        headers=ALICE,
    )

    assert response.status_code == 200
    operation = db.session.execute(db.select(FlatteningOperation)).scalars().one()
    assert operation.get_target_includes() == ["_spf.google.com"]


def test_flatten_does_not_store_includes_that_failed(client, fake_dns_resolver):
    fake_dns_resolver.failures["spf.sender.test"] = DnsTimeout

    response = client.post(
        "/api/v1/spf/example.com/flatten",
        json={"includes": ["_spf.google.com", "spf.sender.test"]},
        headers=ALICE,
    )

    assert response.status_code == 200
    assert any("spf.sender.test" in e for e in response.get_json()["errors"])
    operation = db.session.execute(db.select(FlatteningOperation)).scalars().one()
    assert operation.get_target_includes() == ["_spf.google.com"]


def test_flatten_accepts_numeric_strings_in_options(client):
    response = client.post(
        "/api/v1/spf/example.com/flatten",
        json={"includes": ["spf.sender.test"], "options": {"max_ips_per_record": "5"}, "save": False},
        headers=ALICE,
    )

    assert response.status_code == 200
    assert response.get_json()["success"] is True


@pytest.mark.parametrize(
    "options",
    [
        {"max_ips_per_record": "many"},
        {"max_depth": 0},
        {"consolidate_cidr": "sometimes"},
        {"consolidation_slack": 3},
        ["max_depth", 3],
    ],
)
def test_flatten_rejects_bad_options(client, options):
    response = client.post(
        "/api/v1/spf/example.com/flatten",
        json={"includes": ["spf.sender.test"], "options": options},
        headers=ALICE,
    )

    assert response.status_code == 400
    assert response.get_json()["error"].startswith("Invalid options")
    assert db.session.execute(db.select(FlatteningOperation)).scalars().all() == []


# ---------------------------------------------------------------------------
# Macros
# ---------------------------------------------------------------------------


def test_expand_macro_string(client):
    response = client.post(
        "/api/v1/macros/expand",
        json={"text": "%{ir}.%{v}._spf.%{d2}", "context": {"sender_ip": "192.0.2.3", "domain": "mail.example.com"}},
        headers=ALICE,
    )

    assert response.status_code == 200
    data = response.get_json()
    assert data["is_valid"] is True
    assert data["expanded"] == "3.2.0.192.in-addr._spf.example.com"
    assert data["security_risk"] == "medium"


def test_expand_reports_malformed_macros(client):
    response = client.post("/api/v1/macros/expand", json={"text": "%{x}.example.com"}, headers=ALICE)

    assert response.status_code == 200
    data = response.get_json()
    assert data["is_valid"] is False
    assert data["expanded"] is None
    assert data["errors"]


def test_expand_rejects_bad_context(client):
    response = client.post(
        "/api/v1/macros/expand",
        json={"text": "%{i}", "context": {"sender_ip": 42}},
        headers=ALICE,
    )

    assert response.status_code == 400


def test_expand_requires_text(client):
    assert client.post("/api/v1/macros/expand", json={}, headers=ALICE).status_code == 400


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


def test_check_domain(client):
    response = client.post("/api/v1/spf/example.com/check", headers=ALICE)

    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "healthy"
    assert data["auto_update_eligible"] is False
    assert data["include_states"]["_spf.google.com"] == "baseline_established"


def test_check_domain_is_rate_limited(client):
    assert client.post("/api/v1/spf/example.com/check", headers=ALICE).status_code == 200

    response = client.post("/api/v1/spf/example.com/check", headers=ALICE)

    assert response.status_code == 429
    # a different user is not affected
    assert client.post("/api/v1/spf/example.com/check", headers={"X-User-Id": "bob"}).status_code == 200


def test_check_domain_with_invalid_record_returns_422(client, fake_dns_resolver):
    fake_dns_resolver.txt["broken.example"] = ["v=spf1 bogus -all"]

    response = client.post("/api/v1/spf/broken.example/check", headers=ALICE)

    assert response.status_code == 422
    assert any("bogus" in e for e in response.get_json()["errors"])


# ---------------------------------------------------------------------------
# Flattening history
# ---------------------------------------------------------------------------


def _flatten(client, headers=ALICE):
    client.post(
        "/api/v1/spf/example.com/flatten",
        json={"includes": ["_spf.google.com"]},
        headers=headers,
    )
    return db.session.execute(
        db.select(FlatteningOperation).order_by(FlatteningOperation.id.desc())
    ).scalars().first().id


def test_history_lists_own_operations(client):
    _flatten(client)
    _flatten(client, {"X-User-Id": "bob"})

    data = client.get("/api/v1/flattening?domain=example.com", headers=ALICE).get_json()

    assert len(data) == 1
    assert data[0]["status"] == "pending"
    assert data[0]["target_includes"] == ["_spf.google.com"]


def test_approve_and_revert(client):
    operation_id = _flatten(client)

    approved = client.post(f"/api/v1/flattening/{operation_id}/approve", headers=ALICE)
    assert approved.status_code == 200
    assert approved.get_json()["status"] == "completed"

    again = client.post(f"/api/v1/flattening/{operation_id}/approve", headers=ALICE)
    assert again.status_code == 409

    reverted = client.post(f"/api/v1/flattening/{operation_id}/revert", headers=ALICE)
    assert reverted.status_code == 200
    assert reverted.get_json()["original_record"] == RECORD


def test_other_users_cannot_approve(client):
    operation_id = _flatten(client)

    response = client.post(f"/api/v1/flattening/{operation_id}/approve", headers={"X-User-Id": "bob"})

    assert response.status_code == 404
