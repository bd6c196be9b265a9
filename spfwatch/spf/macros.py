"""
SPF macro parsing, expansion and assessment (RFC 7208 section 7).

A macro-string mixes literal text with:
- ``%{<letter><digits><r><delimiters>}`` macros
- ``%%`` (a literal ``%``), ``%_`` (a space) and ``%-`` (``%20``)

Any other use of ``%`` is malformed.  Letters ``c``, ``r`` and ``t`` are
only allowed in explanation text; an uppercase letter URL-escapes the
expanded value.

Assessment covers the receiver-side cost and abuse potential of each term:
``%{p}`` in a lookup mechanism forces PTR queries per message, ``%{s}`` or
``%{l}`` in ``exists`` lets a sender enumerate valid mailboxes, and
``%{c}`` / ``%{t}`` leak receiver details.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import time
from dataclasses import replace
from urllib.parse import quote

from spfwatch.spf.types import (
    MacroAnalysis,
    MacroContext,
    MacroPreview,
    MacroVulnerability,
    SPFMacro,
    SPFRecord,
)

logger = logging.getLogger(__name__)

MACRO_LETTERS = frozenset("slodipvhcrt")
EXPLANATION_ONLY_LETTERS = frozenset("crt")
MAX_DIGITS = 128

# Terms whose domain-spec may carry macros.
MACRO_TERMS = ("include", "exists", "a", "mx", "ptr", "redirect", "exp")

_LOOKUP_TERMS = frozenset({"exists", "a", "mx"})
_RISK_ORDER = {"low": 0, "medium": 1, "high": 2, "critical": 3}

# %{...}, a literal escape, or a stray %.
_PERCENT_RE = re.compile(r"%(\{[^}]*\}|.|$)", re.S)
_MACRO_RE = re.compile(r"^([A-Za-z])(\d*)([rR]?)([.\-+,/_=]*)$")
_LITERAL_ESCAPES = {"%": "%", "_": " ", "-": "%20"}


class MacroError(ValueError):
    """A macro-string could not be expanded."""

    def __init__(self, text: str, errors) -> None:
        self.text = text
        self.errors = list(errors)
        super().__init__(f"Invalid macro string {text!r}: {'; '.join(self.errors)}")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def has_macros(text: str) -> bool:
    return "%" in (text or "")


def parse_macros(text: str, explanation: bool = False) -> list[SPFMacro]:
    """Return every macro and malformed escape in *text*, in order.

    Literal escapes (``%%``, ``%_``, ``%-``) are not macros and are skipped.
    """
    macros: list[SPFMacro] = []
    for match in _PERCENT_RE.finditer(text or ""):
        token = match.group(1)
        if token in _LITERAL_ESCAPES:
            continue
        if len(token) >= 2 and token[0] == "{" and token[-1] == "}":
            macros.append(_parse_macro(match.group(0), token[1:-1], match.start(), explanation))
        else:
            macros.append(SPFMacro(
                raw=match.group(0),
                letter="",
                position=match.start(),
                is_valid=False,
                errors=(f"Invalid macro escape {match.group(0)!r}; use %%, %_, %- or %{{...}}",),
                security_risk="medium",
            ))
    return macros


def macro_errors(text: str, explanation: bool = False) -> list[str]:
    """Return the problems with every macro in *text*."""
    return [error for macro in parse_macros(text, explanation) for error in macro.errors]


def _parse_macro(raw: str, body: str, position: int, explanation: bool) -> SPFMacro:
    match = _MACRO_RE.match(body)
    if not match:
        return SPFMacro(
            raw=raw,
            letter="",
            position=position,
            is_valid=False,
            errors=(f"Malformed macro {raw}",),
            security_risk="medium",
        )

    letter_text, digits_text, reverse, delimiters = match.groups()
    letter = letter_text.lower()
    errors: list[str] = []
    if letter not in MACRO_LETTERS:
        errors.append(f"Unknown macro letter {letter_text!r} in {raw}")
    elif letter in EXPLANATION_ONLY_LETTERS and not explanation:
        errors.append(f"%{{{letter}}} is only allowed in explanation text: {raw}")

    digits = None
    if digits_text:
        digits = int(digits_text)
        if not 1 <= digits <= MAX_DIGITS:
            errors.append(f"Digit transformer in {raw} must be between 1 and {MAX_DIGITS}")

    macro = SPFMacro(
        raw=raw,
        letter=letter,
        position=position,
        digits=digits,
        reverse=bool(reverse),
        delimiters=delimiters,
        url_escape=letter_text.isupper(),
        is_valid=not errors,
        errors=tuple(errors),
    )
    return _with_risk(macro)


def macro_risk(macro: SPFMacro) -> str:
    """Rate one macro on its own, before considering the term it sits in."""
    if not macro.is_valid and not macro.letter:
        return "medium"
    if macro.letter in ("p", "c", "t"):
        return "high"
    if macro.modifier_count > 2 or (macro.reverse and macro.digits is not None):
        return "medium"
    if macro.letter in ("i", "h"):
        return "medium"
    return "low"


def _with_risk(macro: SPFMacro) -> SPFMacro:
    return replace(macro, security_risk=macro_risk(macro))


# ---------------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------------


def expand_macros(text: str, context: MacroContext | None = None, explanation: bool = False) -> str:
    """Expand every macro and escape in *text* for one message.

    Raises:
        MacroError: *text* contains a malformed or disallowed macro.
        ValueError: ``context.sender_ip`` is not an IP address.
    """
    context = context or MacroContext()
    problems = macro_errors(text, explanation)
    if problems:
        raise MacroError(text, problems)

    pieces: list[str] = []
    last = 0
    for match in _PERCENT_RE.finditer(text):
        pieces.append(text[last:match.start()])
        token = match.group(1)
        if token in _LITERAL_ESCAPES:
            pieces.append(_LITERAL_ESCAPES[token])
        else:
            pieces.append(_expand_one(_parse_macro(match.group(0), token[1:-1], match.start(), True), context))
        last = match.end()
    pieces.append(text[last:])
    return "".join(pieces)


def _expand_one(macro: SPFMacro, context: MacroContext) -> str:
    value = macro_value(macro.letter, context)
    if macro.delimiters:
        parts = re.split(f"[{re.escape(macro.delimiters)}]", value)
    else:
        parts = value.split(".")
    if macro.reverse:
        parts.reverse()
    if macro.digits is not None:
        parts = parts[-macro.digits:]
    expanded = ".".join(parts)
    if macro.url_escape:
        expanded = quote(expanded, safe="")
    return expanded


def macro_value(letter: str, context: MacroContext) -> str:
    """Return the unexpanded value a macro letter stands for."""
    local, _, sender_domain = context.sender.rpartition("@")
    if letter == "s":
        return context.sender
    if letter == "l":
        return local or "postmaster"
    if letter == "o":
        return sender_domain
    if letter == "d":
        return context.domain
    if letter == "h":
        return context.helo
    if letter == "p":
        return context.validated_domain or "unknown"
    if letter == "r":
        return context.receiver or "unknown"
    if letter == "t":
        return str(context.timestamp if context.timestamp is not None else int(time.time()))

    address = ipaddress.ip_address(context.sender_ip)
    if letter == "v":
        return "in-addr" if address.version == 4 else "ip6"
    if letter == "i":
        if address.version == 4:
            return str(address)
        return ".".join(address.exploded.replace(":", ""))
    if letter == "c":
        return str(address)
    raise ValueError(f"Unknown macro letter {letter!r}")


def preview_expansion(
    text: str,
    context: MacroContext | None = None,
    explanation: bool = False,
) -> MacroPreview:
    """Expand *text* for display, reporting problems instead of raising."""
    macros = tuple(parse_macros(text, explanation))
    errors = [error for macro in macros for error in macro.errors]
    risk = max((m.security_risk for m in macros), key=_RISK_ORDER.__getitem__, default="low")
    expanded = None
    if not errors:
        try:
            expanded = expand_macros(text, context, explanation)
        except ValueError as exc:
            errors.append(str(exc))
    return MacroPreview(
        text=text,
        expanded=expanded,
        is_valid=not errors,
        errors=tuple(errors),
        security_risk=risk,
        macros=macros,
    )


# ---------------------------------------------------------------------------
# Record assessment
# ---------------------------------------------------------------------------


def record_macro_terms(record: SPFRecord) -> list[tuple[str, str]]:
    """Return ``(term type, value)`` for every term of *record* that uses ``%``."""
    terms = [(m.type, m.value) for m in record.mechanisms if has_macros(m.value)]
    terms.extend((m.name, m.value) for m in record.modifiers if has_macros(m.value))
    return terms


def analyze_record_macros(record: SPFRecord) -> MacroAnalysis:
    """Assess the macros used across *record*."""
    macros: list[SPFMacro] = []
    vulnerabilities: list[MacroVulnerability] = []
    lookups = 0.0

    for term, value in record_macro_terms(record):
        term_macros = parse_macros(value)
        macros.extend(term_macros)
        vulnerabilities.extend(_term_vulnerabilities(term, value, term_macros))
        lookups += _term_lookups(term, term_macros)

    if not macros:
        return MacroAnalysis()

    errors = [error for macro in macros for error in macro.errors]
    high = [v for v in vulnerabilities if v.severity == "high"]
    if len(high) > 1:
        risk = "critical"
    else:
        risk = max(
            [v.severity for v in vulnerabilities] + ["medium" if errors else "low"],
            key=_RISK_ORDER.__getitem__,
        )

    count = len(macros)
    if lookups > 5 or count > 8:
        overhead = "severe"
    elif lookups > 3 or count > 5:
        overhead = "significant"
    elif lookups > 1 or count > 2:
        overhead = "moderate"
    else:
        overhead = "minimal"

    modifiers = sum(m.modifier_count for m in macros)
    unique = len({m.letter for m in macros if m.letter})
    high_macros = sum(1 for m in macros if m.security_risk == "high")
    score = min(100, 8 * count + 3 * modifiers + 2 * unique + 10 * high_macros)
    if score > 70 or count > 6:
        maintenance = "high"
    elif score > 40 or count > 3:
        maintenance = "medium"
    else:
        maintenance = "low"

    analysis = MacroAnalysis(
        macros=tuple(macros),
        vulnerabilities=tuple(_unique_vulnerabilities(vulnerabilities)),
        risk_level=risk,
        dns_lookups_per_email=round(lookups, 1),
        processing_overhead=overhead,
        complexity_score=score,
        maintenance_risk=maintenance,
        errors=tuple(errors),
    )
    analysis = replace(analysis, recommendations=tuple(_recommendations(analysis)))
    logger.debug(
        "Macros in %s: %d macro(s), risk=%s, %.1f extra lookups per message",
        record.domain or "record", count, risk, analysis.dns_lookups_per_email,
    )
    return analysis


def _term_vulnerabilities(term: str, value: str, macros: list[SPFMacro]) -> list[MacroVulnerability]:
    found: list[MacroVulnerability] = []
    label = f"{term}:{value}" if term not in ("redirect", "exp") else f"{term}={value}"
    for macro in macros:
        if macro.letter == "p" and term in _LOOKUP_TERMS:
            found.append(MacroVulnerability(
                type="dns_amplification",
                severity="high",
                description=f"{macro.raw} in {term} makes every receiver run PTR and forward lookups per message",
                macro=macro.raw,
                term=label,
                remediation="Replace the %{p} macro with static ip4/ip6 ranges or trusted domains",
            ))
        if macro.letter in ("c", "t"):
            found.append(MacroVulnerability(
                type="information_disclosure",
                severity="medium",
                description=f"{macro.raw} exposes receiver details in DNS queries",
                macro=macro.raw,
                term=label,
                remediation="Avoid %{c} and %{t} outside explanation text",
            ))
        if macro.letter in ("s", "l") and term == "exists":
            found.append(MacroVulnerability(
                type="enumeration",
                severity="medium",
                description=f"{macro.raw} in exists lets senders enumerate valid mailboxes",
                macro=macro.raw,
                term=label,
                remediation="Rate limit the zone behind the exists term or validate senders another way",
            ))
    return found


def _term_lookups(term: str, macros: list[SPFMacro]) -> float:
    lookups = 0.0
    for macro in macros:
        if macro.letter == "p":
            lookups += 2 if term in _LOOKUP_TERMS else 1
        elif macro.letter == "i" and macro.reverse:
            lookups += 0.5
    return lookups


def _unique_vulnerabilities(vulnerabilities: list[MacroVulnerability]) -> list[MacroVulnerability]:
    seen: set[tuple[str, str]] = set()
    unique = []
    for vulnerability in vulnerabilities:
        key = (vulnerability.type, vulnerability.description)
        if key not in seen:
            seen.add(key)
            unique.append(vulnerability)
    return unique


def _recommendations(analysis: MacroAnalysis) -> list[str]:
    recommendations = [v.remediation for v in analysis.vulnerabilities if v.remediation]
    if analysis.dns_lookups_per_email > 3:
        recommendations.append(
            f"Macros add about {analysis.dns_lookups_per_email} DNS lookups per message; "
            "replace dynamic macros with static ranges where possible"
        )
    if analysis.processing_overhead == "severe":
        recommendations.append("Simplify macro modifiers and consolidate similar terms")
    if analysis.maintenance_risk == "high":
        recommendations.append(
            f"Macro complexity score is {analysis.complexity_score}/100; simplify the record"
        )
    if analysis.errors:
        recommendations.append("Fix malformed macros; receivers return permerror on them")
    return list(dict.fromkeys(recommendations))
