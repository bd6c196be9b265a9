"""
SPF record parsing and lookup-cost accounting.

Turns SPF TXT text into an SPFRecord:
- Mandatory leading ``v=spf1`` term
- Qualifier stripping (``+`` when absent)
- Mechanisms: all, include, a, mx, ptr, ip4, ip6, exists
- Modifiers: redirect, exp (unknown modifiers are kept with a warning)
- DNS lookup count enforcement (max 10 per RFC 7208)
- Practical TXT length limits (255 per character-string, 450 total)

Validation problems never raise.  They populate ``errors`` and clear
``is_valid``, and the best-effort mechanism list is still returned so a
broken record can be analysed and repaired.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import replace
from typing import Iterable, Sequence

from spfwatch.spf.macros import MACRO_TERMS, has_macros, macro_errors
from spfwatch.spf.resolver import DnsLookupError
from spfwatch.spf.types import (
    MAX_LOOKUPS,
    MAX_RECORD_LENGTH,
    MAX_STRING_LENGTH,
    SPFMechanism,
    SPFModifier,
    SPFRecord,
)

logger = logging.getLogger(__name__)

_QUALIFIERS = "+-~?"

# Labels may carry SPF macros such as %{i} or %{d2}.
_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}\.?$)[A-Za-z0-9_%{}\-]+(\.[A-Za-z0-9_%{}\-]+)*\.?$"
)
_MACRO_SPAN_RE = re.compile(r"%\{[^}]*\}")
_MODIFIER_RE = re.compile(r"^([A-Za-z][A-Za-z0-9_.\-]*)=(.*)$")
_MECHANISM_RE = re.compile(r"^([A-Za-z0-9]+)(.*)$")

_KNOWN_MODIFIERS = {"redirect", "exp"}
_CLOSE_TO_LIMIT = 8


def parse_spf_string(
    text: str | None,
    domain: str = "",
    strings: Sequence[str] | None = None,
) -> SPFRecord:
    """Parse SPF record *text* published at *domain*.

    Args:
        text: The SPF TXT value (character-strings already joined).
        domain: Domain the record was published at, if known.
        strings: The individual TXT character-strings as published.  The
            255-character limit is only checked when these are supplied.

    Returns:
        An SPFRecord; never raises.
    """
    domain = (domain or "").strip().lower().rstrip(".")
    raw = (text or "").strip()
    supplied = tuple(strings) if strings is not None else ()

    if not raw:
        return SPFRecord(raw="", domain=domain, errors=("Empty SPF record",), strings=supplied)

    tokens = raw.split()
    if tokens[0].lower() != "v=spf1":
        return SPFRecord(
            raw=raw,
            domain=domain,
            errors=("SPF record must start with v=spf1",),
            strings=supplied,
        )

    errors: list[str] = []
    warnings: list[str] = []
    mechanisms: list[SPFMechanism] = []
    modifiers: list[SPFModifier] = []

    for token in tokens[1:]:
        modifier_match = _MODIFIER_RE.match(token)
        if modifier_match:
            modifier = _parse_modifier(modifier_match, errors, warnings)
            if modifier is not None:
                modifiers.append(modifier)
            continue

        mechanism = _parse_mechanism(token, errors)
        if mechanism is not None:
            mechanisms.append(mechanism)

    _check_structure(mechanisms, modifiers, errors, warnings)
    _check_macros(mechanisms, modifiers, errors)

    total_lookups = sum(m.lookup_cost for m in mechanisms)
    effective = total_lookups + (1 if any(m.name == "redirect" for m in modifiers) else 0)
    if effective > MAX_LOOKUPS:
        errors.append(
            f"Too many DNS lookups ({effective}); SPF allows at most "
            f"{MAX_LOOKUPS} (lookup limit exceeded)"
        )
    elif effective > _CLOSE_TO_LIMIT:
        warnings.append(
            f"{effective} DNS lookups is close to the {MAX_LOOKUPS} lookup limit"
        )

    for index, chunk in enumerate(supplied):
        if len(chunk) > MAX_STRING_LENGTH:
            errors.append(
                f"TXT string {index + 1} is {len(chunk)} characters; "
                f"the limit per string is {MAX_STRING_LENGTH}"
            )
    if len(raw) > MAX_RECORD_LENGTH:
        errors.append(
            f"SPF record is {len(raw)} characters; "
            f"the practical limit is {MAX_RECORD_LENGTH}"
        )

    return SPFRecord(
        raw=raw,
        domain=domain,
        mechanisms=tuple(mechanisms),
        modifiers=tuple(modifiers),
        total_lookups=total_lookups,
        is_valid=not errors,
        errors=tuple(errors),
        warnings=tuple(warnings),
        strings=supplied,
    )


def parse_spf_record(domain: str, resolver) -> SPFRecord:
    """Fetch and parse the SPF record published at *domain*.

    DNS failures, a missing record and duplicate records are reported as
    errors on the returned record.

    Args:
        domain: The domain whose TXT records are queried.
        resolver: A DnsResolver (or compatible) instance.
    """
    domain = domain.strip().lower().rstrip(".")
    try:
        txt_records = resolver.resolve_txt_strings(domain)
    except DnsLookupError as exc:
        logger.info("SPF lookup failed for %s: %s", domain, exc)
        return SPFRecord(
            raw="",
            domain=domain,
            errors=(f"DNS lookup failed ({exc.error_type}): {exc}",),
        )

    spf_records = [
        chunks for chunks in txt_records if is_spf_text("".join(chunks))
    ]

    if not spf_records:
        return SPFRecord(raw="", domain=domain, errors=("No SPF record found",))

    chunks = spf_records[0]
    record = parse_spf_string("".join(chunks), domain, strings=chunks)

    if len(spf_records) > 1:
        record = replace(
            record,
            is_valid=False,
            errors=record.errors + (
                f"Multiple SPF records found ({len(spf_records)}); "
                "RFC 7208 requires exactly one",
            ),
        )
    return record


def build_spf_record(
    mechanisms: Iterable[SPFMechanism],
    modifiers: Iterable[SPFModifier] = (),
) -> str:
    """Rebuild SPF record text from mechanisms followed by modifiers."""
    terms = ["v=spf1"]
    terms.extend(str(m) for m in mechanisms)
    terms.extend(str(m) for m in modifiers)
    return " ".join(terms)


def split_txt_strings(text: str, limit: int = MAX_STRING_LENGTH) -> list[str]:
    """Split *text* into TXT character-strings of at most *limit* characters.

    Splits fall on term boundaries where possible; concatenating the result
    yields *text* unchanged.
    """
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    current = ""
    for index, term in enumerate(text.split(" ")):
        piece = term if index == 0 else f" {term}"
        if len(current) + len(piece) <= limit:
            current += piece
            continue
        if current:
            chunks.append(current)
        current = piece
        while len(current) > limit:
            chunks.append(current[:limit])
            current = current[limit:]
    if current:
        chunks.append(current)
    return chunks


def is_valid_domain(value: str) -> bool:
    # Macro delimiters such as + or = are not hostname characters.
    return bool(value) and bool(_DOMAIN_RE.match(_MACRO_SPAN_RE.sub("m", value)))


def unparsed_terms(record: SPFRecord) -> list[str]:
    """Return the terms of *record* that parsed as neither mechanism nor modifier."""
    known = {m.raw_text.lower() for m in record.mechanisms}
    known.update(str(m).lower() for m in record.modifiers)
    return [t for t in record.raw.split()[1:] if t.lower() not in known]


def is_spf_text(text: str) -> bool:
    """Return True if *text* starts with the v=spf1 version term."""
    parts = text.strip().split(None, 1)
    return bool(parts) and parts[0].lower() == "v=spf1"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _parse_modifier(
    match: re.Match,
    errors: list[str],
    warnings: list[str],
) -> SPFModifier | None:
    name = match.group(1).lower()
    value = match.group(2)

    if name in _KNOWN_MODIFIERS:
        if not is_valid_domain(value):
            errors.append(f"Invalid domain in {name}= modifier: {value!r}")
        return SPFModifier(name=name, value=value)

    warnings.append(f"Unknown modifier {name}= ignored by receivers")
    return SPFModifier(name=name, value=value)


def _parse_mechanism(token: str, errors: list[str]) -> SPFMechanism | None:
    """Parse one mechanism term, or record an error and return None."""
    qualifier = "+"
    body = token
    if body[0] in _QUALIFIERS:
        qualifier = body[0]
        body = body[1:]

    match = _MECHANISM_RE.match(body)
    if not match:
        errors.append(f"Unknown mechanism: {token}")
        return None

    name = match.group(1).lower()
    rest = match.group(2)

    if name == "all":
        if rest:
            errors.append(f"'all' takes no argument: {token}")
        return SPFMechanism("all", qualifier, "", token)

    if name in ("include", "exists"):
        if not rest.startswith(":") or not is_valid_domain(rest[1:]):
            errors.append(f"Invalid domain in {name} mechanism: {token}")
            return SPFMechanism(name, qualifier, rest.lstrip(":"), token)
        return SPFMechanism(name, qualifier, rest[1:], token)

    if name in ("a", "mx"):
        if rest and rest[0] not in ":/":
            errors.append(f"Unknown mechanism: {token}")
            return None
        value = rest[1:] if rest.startswith(":") else rest
        if rest == ":" or not _valid_host_with_cidr(value):
            errors.append(f"Invalid {name} mechanism: {token}")
        return SPFMechanism(name, qualifier, value, token)

    if name == "ptr":
        if rest and (not rest.startswith(":") or not is_valid_domain(rest[1:])):
            errors.append(f"Invalid ptr mechanism: {token}")
        return SPFMechanism("ptr", qualifier, rest[1:] if rest.startswith(":") else "", token)

    if name in ("ip4", "ip6"):
        value = rest[1:] if rest.startswith(":") else ""
        if not _valid_network(value, 4 if name == "ip4" else 6):
            errors.append(f"Invalid {name} address: {token}")
        return SPFMechanism(name, qualifier, value, token)

    errors.append(f"Unknown mechanism: {token}")
    return None


def _valid_host_with_cidr(value: str) -> bool:
    """Validate the ``[domain][/cidr4][//cidr6]`` argument of a/mx."""
    if not value:
        return True
    host, slash, cidr = value.partition("/")
    if host and not is_valid_domain(host):
        return False
    if not slash:
        return True
    cidr4, _, cidr6 = cidr.partition("/")
    if cidr4 and not (cidr4.isdigit() and 0 <= int(cidr4) <= 32):
        return False
    if cidr6 and not (cidr6.isdigit() and 0 <= int(cidr6) <= 128):
        return False
    return bool(cidr4 or cidr6)


def _valid_network(value: str, version: int) -> bool:
    try:
        network = ipaddress.ip_network(value, strict=False)
    except ValueError:
        return False
    return network.version == version


def _check_structure(
    mechanisms: list[SPFMechanism],
    modifiers: list[SPFModifier],
    errors: list[str],
    warnings: list[str],
) -> None:
    all_positions = [i for i, m in enumerate(mechanisms) if m.type == "all"]
    redirects = [m for m in modifiers if m.name == "redirect"]

    if len(all_positions) > 1:
        errors.append(f"Multiple 'all' mechanisms found ({len(all_positions)})")
    if len(redirects) > 1:
        errors.append(f"Multiple redirect= modifiers found ({len(redirects)})")
    if len([m for m in modifiers if m.name == "exp"]) > 1:
        errors.append("Multiple exp= modifiers found")

    if all_positions:
        if all_positions[0] < len(mechanisms) - 1:
            warnings.append("Mechanisms after 'all' are never evaluated")
        if redirects:
            warnings.append("redirect= is ignored because the record has an 'all' mechanism")
        if mechanisms[all_positions[0]].qualifier == "+":
            warnings.append("SPF uses +all which allows any sender")
    elif not redirects:
        warnings.append("No 'all' mechanism found in SPF record")

    if any(m.type == "ptr" for m in mechanisms):
        warnings.append("ptr mechanism is deprecated (RFC 7208) and slow to evaluate")


def _check_macros(
    mechanisms: list[SPFMechanism],
    modifiers: list[SPFModifier],
    errors: list[str],
) -> None:
    terms = [(m.type, m.value, str(m)) for m in mechanisms]
    terms.extend((m.name, m.value, str(m)) for m in modifiers)
    for name, value, text in terms:
        if name not in MACRO_TERMS or not has_macros(value):
            continue
        for problem in macro_errors(value):
            errors.append(f"Invalid macro in {text}: {problem}")
