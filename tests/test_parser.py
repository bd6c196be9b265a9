"""
Unit tests for spfwatch/spf/parser.py

Parsing is pure; record fetching uses the FakeResolver from conftest.
"""

from __future__ import annotations

import pytest

from spfwatch.spf.parser import (
    build_spf_record,
    is_spf_text,
    is_valid_domain,
    parse_spf_record,
    parse_spf_string,
    split_txt_strings,
    unparsed_terms,
)
from spfwatch.spf.resolver import DnsTimeout


def _includes(n: int) -> str:
    return " ".join(f"include:s{i}.example.com" for i in range(n))


# ---------------------------------------------------------------------------
# Lookup accounting
# ---------------------------------------------------------------------------


def test_lookup_count_sums_lookup_mechanisms():
    record = parse_spf_string("v=spf1 include:a.com include:b.com a mx ip4:1.2.3.4 -all", "example.com")

    assert record.is_valid is True
    assert record.total_lookups == 4
    assert record.errors == ()
    assert [m.type for m in record.mechanisms] == ["include", "include", "a", "mx", "ip4", "all"]
    assert record.includes == ["a.com", "b.com"]


def test_eleven_includes_exceed_lookup_limit():
    record = parse_spf_string(f"v=spf1 {_includes(11)} -all")

    assert record.is_valid is False
    assert record.total_lookups == 11
    assert any("lookup limit" in e for e in record.errors)


def test_ten_lookups_is_valid_with_warning():
    record = parse_spf_string(f"v=spf1 {_includes(10)} -all")

    assert record.is_valid is True
    assert record.total_lookups == 10
    assert any("close to" in w for w in record.warnings)


def test_redirect_counts_as_modifier_lookup():
    record = parse_spf_string("v=spf1 include:a.com redirect=_spf.example.com")

    assert record.total_lookups == 1
    assert record.modifier_lookups == 1
    assert record.effective_lookups == 2
    assert record.redirect == "_spf.example.com"
    # redirect stands in for 'all'
    assert not any("No 'all'" in w for w in record.warnings)


def test_redirect_pushes_effective_lookups_over_limit():
    record = parse_spf_string(f"v=spf1 {_includes(10)} redirect=other.example.com")

    assert record.is_valid is False
    assert any("(11)" in e for e in record.errors)


def test_ip_mechanisms_cost_nothing():
    record = parse_spf_string("v=spf1 ip4:192.0.2.0/24 ip6:2001:db8::/32 -all")

    assert record.total_lookups == 0
    assert all(m.lookup_cost == 0 for m in record.mechanisms)


# ---------------------------------------------------------------------------
# Qualifiers and values
# ---------------------------------------------------------------------------


def test_qualifiers_are_stripped_and_kept():
    record = parse_spf_string("v=spf1 ~include:a.com ?ip4:1.2.3.4 include:b.com -all")

    qualifiers = [m.qualifier for m in record.mechanisms]
    assert qualifiers == ["~", "?", "+", "-"]
    assert record.mechanisms[0].value == "a.com"


def test_a_and_mx_with_cidr():
    record = parse_spf_string("v=spf1 a/24 mx:mail.example.com/28 -all")

    assert record.is_valid is True
    a, mx, _ = record.mechanisms
    assert a.value == "/24"
    assert str(a) == "a/24"
    assert mx.value == "mail.example.com/28"
    assert str(mx) == "mx:mail.example.com/28"


def test_build_reproduces_canonical_record():
    text = "v=spf1 include:_spf.google.com ~ip4:192.0.2.0/24 a:mail.example.com mx -all exp=explain.example.com"
    record = parse_spf_string(text)

    assert build_spf_record(record.mechanisms, record.modifiers) == text


def test_mechanism_names_are_case_insensitive():
    record = parse_spf_string("V=SPF1 INCLUDE:a.com -ALL")

    assert record.is_valid is True
    assert [m.type for m in record.mechanisms] == ["include", "all"]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def test_empty_record():
    record = parse_spf_string("   ")

    assert record.is_valid is False
    assert record.errors == ("Empty SPF record",)


def test_missing_version_term():
    record = parse_spf_string("v=spf2 include:a.com -all")

    assert record.is_valid is False
    assert record.mechanisms == ()
    assert "v=spf1" in record.errors[0]


def test_unknown_mechanism_is_reported_and_dropped():
    record = parse_spf_string("v=spf1 foo:bar include:a.com -all")

    assert record.is_valid is False
    assert "Unknown mechanism: foo:bar" in record.errors
    assert [m.type for m in record.mechanisms] == ["include", "all"]


@pytest.mark.parametrize(
    "term",
    ["ip4:300.1.1.1", "ip4:2001:db8::1", "ip6:192.0.2.1", "ip4:", "include:", "a:bad..name", "mx/99"],
)
def test_malformed_values_invalidate_record(term):
    record = parse_spf_string(f"v=spf1 {term} -all")

    assert record.is_valid is False
    assert record.errors


def test_multiple_all_mechanisms():
    record = parse_spf_string("v=spf1 -all ~all")

    assert record.is_valid is False
    assert any("Multiple 'all'" in e for e in record.errors)


def test_multiple_redirects():
    record = parse_spf_string("v=spf1 redirect=a.example.com redirect=b.example.com")

    assert record.is_valid is False
    assert any("redirect" in e for e in record.errors)


def test_txt_string_over_255_characters_is_an_error():
    text = "v=spf1 " + " ".join(f"ip4:10.2.{i}.0/24" for i in range(20)) + " -all"
    assert 255 < len(text) <= 450

    record = parse_spf_string(text, strings=[text])

    assert record.is_valid is False
    assert any("limit per string" in e for e in record.errors)


def test_record_over_450_characters_is_an_error():
    ips = " ".join(f"ip4:10.0.{i // 250}.{i % 250}" for i in range(40))
    text = f"v=spf1 {ips} -all"
    assert len(text) > 450

    record = parse_spf_string(text)

    assert record.is_valid is False
    assert any("practical limit" in e for e in record.errors)


# ---------------------------------------------------------------------------
# Warnings
# ---------------------------------------------------------------------------


def test_missing_all_warns():
    record = parse_spf_string("v=spf1 ip4:192.0.2.1")

    assert record.is_valid is True
    assert any("No 'all'" in w for w in record.warnings)


def test_plus_all_warns():
    record = parse_spf_string("v=spf1 +all")

    assert any("+all" in w for w in record.warnings)


def test_ptr_is_deprecated():
    record = parse_spf_string("v=spf1 ptr -all")

    assert record.total_lookups == 1
    assert any("deprecated" in w for w in record.warnings)


def test_terms_after_all_warn():
    record = parse_spf_string("v=spf1 -all include:a.com")

    assert any("after 'all'" in w for w in record.warnings)


def test_unknown_modifier_is_kept_with_warning():
    record = parse_spf_string("v=spf1 -all foo=bar")

    assert record.is_valid is True
    assert record.modifiers[0].name == "foo"
    assert any("Unknown modifier" in w for w in record.warnings)


# ---------------------------------------------------------------------------
# TXT string splitting
# ---------------------------------------------------------------------------


def test_split_short_record_is_single_string():
    assert split_txt_strings("v=spf1 -all") == ["v=spf1 -all"]


def test_split_long_record_concatenates_back():
    text = "v=spf1 " + " ".join(f"ip4:10.1.{i}.0/24" for i in range(40)) + " -all"

    chunks = split_txt_strings(text)

    assert len(chunks) > 1
    assert "".join(chunks) == text
    assert all(len(c) <= 255 for c in chunks)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_is_spf_text():
    assert is_spf_text("v=spf1 -all")
    assert is_spf_text("V=SPF1")
    assert not is_spf_text("google-site-verification=abc")
    assert not is_spf_text("")


def test_is_valid_domain():
    assert is_valid_domain("_spf.google.com")
    assert is_valid_domain("%{i}._spf.example.com")
    assert not is_valid_domain("")
    assert not is_valid_domain("bad..name")


# ---------------------------------------------------------------------------
# Fetching from DNS
# ---------------------------------------------------------------------------


def test_parse_spf_record_from_dns(fake_dns):
    resolver = fake_dns(txt={"example.com": ["google-site-verification=abc", "v=spf1 include:a.com -all"]})

    record = parse_spf_record("Example.COM.", resolver)

    assert record.domain == "example.com"
    assert record.is_valid is True
    assert record.includes == ["a.com"]


def test_parse_spf_record_keeps_character_strings(fake_dns):
    resolver = fake_dns(txt={"example.com": [["v=spf1 include:a.com ", "ip4:192.0.2.1 -all"]]})

    record = parse_spf_record("example.com", resolver)

    assert record.strings == ("v=spf1 include:a.com ", "ip4:192.0.2.1 -all")
    assert record.raw == "v=spf1 include:a.com ip4:192.0.2.1 -all"


def test_parse_spf_record_missing(fake_dns):
    record = parse_spf_record("example.com", fake_dns(txt={"example.com": ["hello"]}))

    assert record.is_valid is False
    assert record.errors == ("No SPF record found",)


def test_parse_spf_record_multiple_records(fake_dns):
    resolver = fake_dns(txt={"example.com": ["v=spf1 -all", "v=spf1 ~all"]})

    record = parse_spf_record("example.com", resolver)

    assert record.is_valid is False
    assert any("Multiple SPF records" in e for e in record.errors)


def test_parse_spf_record_dns_failure(fake_dns):
    record = parse_spf_record("example.com", fake_dns(failures={"example.com": DnsTimeout}))

    assert record.is_valid is False
    assert "TIMEOUT" in record.errors[0]


# ---------------------------------------------------------------------------
# Macros
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "term",
    ["exists:%{l+}.%{d}._spf.example.com", "include:%{ir}.%{v}._spf.example.com", "a:%{d2}/24", "exp=explain.%{d}"],
)
def test_macro_domain_specs_are_valid(term):
    record = parse_spf_string(f"v=spf1 {term} -all")

    assert record.is_valid is True
    assert record.errors == ()


@pytest.mark.parametrize(
    "term, problem",
    [
        ("exists:%{c}.example.com", "only allowed in explanation text"),
        ("include:%{x}.example.com", "Unknown macro letter"),
        ("exists:%{d0}.example.com", "Digit transformer"),
        ("redirect=%{z}.example.com", "Unknown macro letter"),
    ],
)
def test_invalid_macros_invalidate_record(term, problem):
    record = parse_spf_string(f"v=spf1 {term} -all")

    assert record.is_valid is False
    assert any(e.startswith(f"Invalid macro in {term}") and problem in e for e in record.errors)


def test_unparsed_terms():
    record = parse_spf_string("v=spf1 foo:bar Include:a.com mx5 ip4:300.1.1.1 -all EXP=explain.example.com")

    assert unparsed_terms(record) == ["foo:bar", "mx5"]
