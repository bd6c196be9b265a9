"""
SPF record analysis: optimisation suggestions and risk assessment.

Suggestion types:
- flatten_include  - include of a well-known ESP, or any include when the
                     record is close to the lookup limit
- remove_redundant - duplicate terms and overlapping ip4/ip6 ranges
- use_ip4          - three or more single addresses in one /24
- remove_ptr       - deprecated ptr mechanisms

Suggestions are sorted by severity, then by estimated lookup savings.
"""

from __future__ import annotations

import ipaddress
import logging
from collections import defaultdict

from spfwatch.spf.esp import is_common_esp
from spfwatch.spf.macros import analyze_record_macros, record_macro_terms
from spfwatch.spf.types import (
    LookupBreakdown,
    OptimizationSuggestion,
    SpfAnalysis,
    SPFRecord,
)

logger = logging.getLogger(__name__)

_SEVERITY_ORDER = {"high": 3, "medium": 2, "low": 1}
_FLATTEN_ANY_THRESHOLD = 8


def generate_suggestions(record: SPFRecord, classifier=None) -> list[OptimizationSuggestion]:
    """Return optimisation suggestions for *record*, most important first.

    Args:
        record: The parsed record (may be invalid).
        classifier: Optional EspClassifier used to recognise ESP includes;
            the built-in ESP table is used when omitted.
    """
    suggestions: list[OptimizationSuggestion] = []
    suggestions.extend(_flattening_opportunities(record, classifier))
    suggestions.extend(_redundant_mechanisms(record))
    suggestions.extend(_consolidation_opportunities(record))
    suggestions.extend(_ptr_removals(record))

    suggestions.sort(
        key=lambda s: (_SEVERITY_ORDER.get(s.severity, 0), s.estimated_savings),
        reverse=True,
    )
    return suggestions


def lookup_breakdown(record: SPFRecord) -> LookupBreakdown:
    counts: dict[str, int] = defaultdict(int)
    for mechanism in record.mechanisms:
        if mechanism.lookup_cost:
            counts[mechanism.type] += 1
    return LookupBreakdown(
        include=counts["include"],
        a=counts["a"],
        mx=counts["mx"],
        ptr=counts["ptr"],
        exists=counts["exists"],
        redirect=record.modifier_lookups,
    )


def risk_level(lookups: int) -> str:
    if lookups >= 10:
        return "critical"
    if lookups >= 8:
        return "high"
    if lookups >= 6:
        return "medium"
    return "low"


def compliance_status(record: SPFRecord) -> str:
    if record.errors or record.effective_lookups > 10:
        return "failing"
    if record.warnings or record.effective_lookups > 8:
        return "warning"
    return "compliant"


def analyze_record(record: SPFRecord, classifier=None) -> SpfAnalysis:
    """Build the full analysis of *record*."""
    suggestions = generate_suggestions(record, classifier)
    level = risk_level(record.effective_lookups)

    actions: list[str] = []
    if level == "critical":
        actions.append("SPF record is at or over the lookup limit; receivers may fail SPF evaluation")
        actions.append("Flatten includes or remove unnecessary mechanisms now")
    elif level == "high":
        actions.append("Close to the lookup limit; apply optimisations soon")
    elif level == "medium":
        actions.append("Consider optimising to keep headroom for future includes")
    else:
        actions.append("SPF record is healthy")
    if any(m.type == "ptr" for m in record.mechanisms):
        actions.append("Remove deprecated ptr mechanisms")
    if len(record.includes) > 5:
        actions.append("High number of includes slows SPF evaluation")

    macros = analyze_record_macros(record) if record_macro_terms(record) else None
    if macros is not None:
        if macros.risk_level in ("high", "critical"):
            actions.append(f"Macro usage carries {macros.risk_level} risk; review the flagged terms")
        actions.extend(macros.recommendations)

    return SpfAnalysis(
        record=record,
        suggestions=tuple(suggestions),
        breakdown=lookup_breakdown(record),
        risk_level=level,
        compliance_status=compliance_status(record),
        recommended_actions=tuple(dict.fromkeys(actions)),
        potential_savings=sum(s.estimated_savings for s in suggestions),
        macros=macros,
    )


# ---------------------------------------------------------------------------
# Suggestion builders
# ---------------------------------------------------------------------------


def _is_known_esp(include_domain: str, classifier) -> bool:
    if classifier is None:
        return is_common_esp(include_domain)
    return classifier.get_stability_profile(include_domain).is_known


def _flattening_opportunities(record: SPFRecord, classifier) -> list[OptimizationSuggestion]:
    suggestions: list[OptimizationSuggestion] = []
    near_limit = record.effective_lookups >= _FLATTEN_ANY_THRESHOLD

    for include_domain in dict.fromkeys(record.includes):
        if _is_known_esp(include_domain, classifier):
            suggestions.append(OptimizationSuggestion(
                type="flatten_include",
                mechanism=include_domain,
                severity="medium",
                description=(
                    f"Flatten {include_domain} to save a DNS lookup; "
                    "this ESP publishes well-known IP ranges."
                ),
                current_lookups=1,
                estimated_savings=1,
                implementation=(
                    f"Replace include:{include_domain} with the ip4/ip6 ranges it "
                    "resolves to and keep the include monitored for changes."
                ),
            ))
        elif near_limit:
            suggestions.append(OptimizationSuggestion(
                type="flatten_include",
                mechanism=include_domain,
                severity="high",
                description=(
                    f"Flatten {include_domain}; the record is close to the "
                    "10 DNS lookup limit."
                ),
                current_lookups=1,
                estimated_savings=1,
                implementation=(
                    f"Resolve the SPF record of {include_domain} and replace the "
                    "include with direct IP mechanisms; requires regular monitoring."
                ),
            ))
    return suggestions


def _redundant_mechanisms(record: SPFRecord) -> list[OptimizationSuggestion]:
    suggestions: list[OptimizationSuggestion] = []

    seen: set[tuple[str, str]] = set()
    for mechanism in record.mechanisms:
        key = (mechanism.type, mechanism.value.lower())
        if key in seen:
            suggestions.append(OptimizationSuggestion(
                type="remove_redundant",
                mechanism=str(mechanism),
                severity="low",
                description=f"Duplicate {mechanism.type} mechanism found",
                current_lookups=mechanism.lookup_cost,
                estimated_savings=mechanism.lookup_cost,
                implementation=f"Remove the duplicate {mechanism} term",
            ))
        seen.add(key)

    networks = []
    for mechanism in record.mechanisms:
        if mechanism.type not in ("ip4", "ip6"):
            continue
        try:
            networks.append((mechanism.value, ipaddress.ip_network(mechanism.value, strict=False)))
        except ValueError:
            continue

    for i, (text_a, net_a) in enumerate(networks):
        for text_b, net_b in networks[i + 1:]:
            if net_a == net_b or net_a.version != net_b.version:
                continue
            if net_a.overlaps(net_b):
                suggestions.append(OptimizationSuggestion(
                    type="remove_redundant",
                    mechanism=f"{text_a} {text_b}",
                    severity="low",
                    description="Overlapping IP ranges detected",
                    implementation=f"Consolidate overlapping ranges {text_a} and {text_b}",
                ))
    return suggestions


def _consolidation_opportunities(record: SPFRecord) -> list[OptimizationSuggestion]:
    groups: dict[ipaddress.IPv4Network, list[str]] = defaultdict(list)
    for mechanism in record.mechanisms:
        if mechanism.type != "ip4":
            continue
        try:
            network = ipaddress.ip_network(mechanism.value, strict=False)
        except ValueError:
            continue
        if network.prefixlen == 32:
            groups[network.supernet(new_prefix=24)].append(str(network.network_address))

    suggestions: list[OptimizationSuggestion] = []
    for block, addresses in groups.items():
        if len(addresses) >= 3:
            suggestions.append(OptimizationSuggestion(
                type="use_ip4",
                mechanism=str(block),
                severity="low",
                description="Multiple individual IPs could be consolidated into a CIDR block",
                implementation=f"Replace {', '.join(addresses)} with ip4:{block}",
            ))
    return suggestions


def _ptr_removals(record: SPFRecord) -> list[OptimizationSuggestion]:
    return [
        OptimizationSuggestion(
            type="remove_ptr",
            mechanism=str(mechanism),
            severity="high",
            description="ptr mechanism is deprecated, slow and unreliable",
            current_lookups=mechanism.lookup_cost,
            estimated_savings=mechanism.lookup_cost,
            implementation=(
                "Remove the ptr mechanism and list the authorised sending "
                "addresses with ip4/ip6 mechanisms (RFC 7208 deprecates ptr)."
            ),
        )
        for mechanism in record.mechanisms
        if mechanism.type == "ptr"
    ]
