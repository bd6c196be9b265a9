"""
SPF include flattening.

Replaces selected ``include:`` mechanisms with the ip4/ip6 mechanisms they
resolve to:

1. Resolve each include's SPF chain with an explicit worklist (ancestor
   path per frame for loop detection, visited set for shared sub-includes,
   depth cap).
2. Optionally consolidate the addresses into CIDR blocks.
3. Rebuild the record, in place or appended ahead of ``all``.
4. Re-parse the synthesized record to count its lookups.
5. Validate length, lookup count and IP mechanism count.
6. Warn about flattened ESPs that need manual monitoring.

A failure to resolve one include never stops the others: that include
stays in the record as an ``include:`` term and the failure is reported in
``errors``.  A synthesized record that fails validation is never returned.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, Sequence, Union

from spfwatch.spf.esp import EspClassifier
from spfwatch.spf.parser import (
    build_spf_record,
    is_spf_text,
    parse_spf_string,
    split_txt_strings,
    unparsed_terms,
)
from spfwatch.spf.resolver import DnsLookupError
from spfwatch.spf.result import Err, Ok, Result
from spfwatch.spf.types import (
    MAX_STRING_LENGTH,
    FlatteningOptions,
    FlatteningResult,
    IncludeResolution,
    OptimizationSuggestion,
    SPFMechanism,
    SPFRecord,
)

logger = logging.getLogger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

# Group sizes used by CIDR consolidation.
_GROUP_PREFIX = {4: 24, 6: 64}


# ---------------------------------------------------------------------------
# CIDR consolidation
# ---------------------------------------------------------------------------


def consolidate_networks(
    networks: Iterable[IPNetwork],
    slack: float = 0.25,
) -> list[IPNetwork]:
    """Merge *networks* into fewer CIDR blocks.

    Exact merges (adjacent or nested networks) always happen.  Networks
    inside one IPv4 /24 or IPv6 /64 are then replaced by their smallest
    common supernet when that supernet holds at most
    ``(1 + slack) * covered`` addresses, ``covered`` being the number of
    addresses the group actually resolves to.
    """
    result: list[IPNetwork] = []
    for version in (4, 6):
        same_version = [n for n in networks if n.version == version]
        if not same_version:
            continue
        collapsed = list(ipaddress.collapse_addresses(same_version))

        group_prefix = _GROUP_PREFIX[version]
        groups: dict[IPNetwork, list[IPNetwork]] = {}
        passthrough: list[IPNetwork] = []
        for network in collapsed:
            if network.prefixlen < group_prefix:
                passthrough.append(network)
            else:
                groups.setdefault(network.supernet(new_prefix=group_prefix), []).append(network)

        merged = list(passthrough)
        for members in groups.values():
            if len(members) == 1:
                merged.extend(members)
                continue
            block = _common_supernet(members)
            covered = sum(m.num_addresses for m in members)
            if block.num_addresses <= (1 + slack) * covered:
                merged.append(block)
            else:
                merged.extend(members)

        result.extend(ipaddress.collapse_addresses(merged))
    return result


def _common_supernet(members: Sequence[IPNetwork]) -> IPNetwork:
    low = min(int(m.network_address) for m in members)
    high = max(int(m.broadcast_address) for m in members)
    prefix = members[0].max_prefixlen - (low ^ high).bit_length()
    network_cls = ipaddress.IPv4Network if members[0].version == 4 else ipaddress.IPv6Network
    return network_cls((low, prefix), strict=False)


def network_term(network: IPNetwork, qualifier: str = "+") -> SPFMechanism:
    """Return the ip4/ip6 mechanism for *network*; single hosts drop the prefix."""
    mech_type = "ip4" if network.version == 4 else "ip6"
    if network.prefixlen == network.max_prefixlen:
        value = str(network.network_address)
    else:
        value = str(network)
    return SPFMechanism(mech_type, qualifier, value, "")


# ---------------------------------------------------------------------------
# Flattener
# ---------------------------------------------------------------------------


class SpfFlattener:
    """Flatten include mechanisms of parsed SPF records.

    Args:
        resolver: DnsResolver (or compatible) used for every lookup.
        classifier: EspClassifier for stability warnings; a built-in-table
            classifier is used when omitted.
    """

    def __init__(self, resolver, classifier: EspClassifier | None = None) -> None:
        self.resolver = resolver
        self.classifier = classifier or EspClassifier(use_store=False)

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def flatten(
        self,
        record: SPFRecord,
        suggestions: Sequence[OptimizationSuggestion | str],
        options: FlatteningOptions | None = None,
    ) -> FlatteningResult:
        """Flatten the includes named by *suggestions* in *record*.

        Args:
            record: Parsed SPF record to rewrite.
            suggestions: ``flatten_include`` suggestions or bare include
                domains.  Other suggestion types are ignored with a warning.
            options: Flattening options; defaults when omitted.

        Returns:
            A FlatteningResult.  ``success`` is only True when the
            synthesized record re-parses as valid.
        """
        options = options or FlatteningOptions()
        warnings: list[str] = []
        errors: list[str] = []
        notes: list[str] = []

        targets = self._selected_includes(record, suggestions, warnings)
        if not targets:
            return FlatteningResult(
                success=False,
                original_lookups=record.total_lookups,
                new_lookups=record.total_lookups,
                warnings=tuple(warnings),
                errors=("No include mechanisms selected for flattening",),
            )

        logger.info("Flattening %d include(s) for %s", len(targets), record.domain or "record")

        resolutions: dict[str, IncludeResolution] = {}
        for include_domain in targets:
            outcome = self.resolve_include(include_domain, options)
            if outcome.ok:
                resolutions[include_domain] = outcome.value
                warnings.extend(outcome.value.notes)
            else:
                logger.warning("Skipping include:%s: %s", include_domain, outcome.reason)
                errors.append(f"include:{include_domain} was not flattened: {outcome.reason}")

        if not resolutions:
            return FlatteningResult(
                success=False,
                original_lookups=record.total_lookups,
                new_lookups=record.total_lookups,
                warnings=tuple(warnings),
                errors=tuple(errors) + ("No includes could be flattened",),
            )

        replacements = {
            domain: self._replacement_terms(resolution, record, options)
            for domain, resolution in resolutions.items()
        }
        mechanisms = _rebuild(record.mechanisms, replacements, options.preserve_order)
        text = build_spf_record(mechanisms, record.modifiers)
        for term in unparsed_terms(record):
            warnings.append(f"{term} was dropped from the flattened record: it is not a valid SPF term")
        reparsed = parse_spf_string(text, record.domain)

        ip_count = sum(1 for m in reparsed.mechanisms if m.type in ("ip4", "ip6"))
        resolved_ips = sorted({
            term.value
            for terms in replacements.values()
            for term in terms
            if term.type in ("ip4", "ip6")
        })

        for domain, resolution in resolutions.items():
            notes.append(
                f"include:{domain} replaced by {len(resolution.networks)} network(s)"
                f" after {resolution.dns_queries} DNS quer"
                f"{'y' if resolution.dns_queries == 1 else 'ies'}"
            )
            if resolution.kept_includes:
                notes.append(
                    f"include:{domain} keeps nested include(s): "
                    + ", ".join(resolution.kept_includes)
                )

        success = True
        if not reparsed.is_valid:
            success = False
            errors.extend(f"Flattened record is invalid: {e}" for e in reparsed.errors)

        txt_strings: tuple[str, ...] = (text,)
        oversized = ip_count > options.max_ips_per_record
        if oversized and not options.split_oversized:
            success = False
            errors.append(
                f"Flattened record has {ip_count} IP mechanisms; the limit is "
                f"{options.max_ips_per_record} per record"
            )
        elif oversized or len(text) > MAX_STRING_LENGTH:
            chunks = split_record(text, options.max_ips_per_record)
            txt_strings = tuple(chunks)
            if oversized:
                notes.append(
                    f"{ip_count} IP mechanisms exceed {options.max_ips_per_record} per "
                    f"record; publish the record as {len(chunks)} TXT strings"
                )
            else:
                notes.append(
                    f"Record is {len(text)} characters; publish it as "
                    f"{len(chunks)} TXT strings of at most {MAX_STRING_LENGTH} characters"
                )

        warnings.extend(self._esp_warnings(resolutions))

        if not success:
            logger.warning(
                "Flattened record for %s failed validation: %s",
                record.domain or "record", "; ".join(errors),
            )
            return FlatteningResult(
                success=False,
                original_lookups=record.total_lookups,
                new_lookups=reparsed.total_lookups,
                ip_count=ip_count,
                resolved_ips=tuple(resolved_ips),
                warnings=tuple(warnings),
                errors=tuple(errors),
                implementation_notes=tuple(notes),
                flattened_includes=tuple(resolutions),
            )

        return FlatteningResult(
            success=True,
            flattened_record=text,
            txt_strings=txt_strings,
            original_lookups=record.total_lookups,
            new_lookups=reparsed.total_lookups,
            ip_count=ip_count,
            resolved_ips=tuple(resolved_ips),
            warnings=tuple(warnings),
            errors=tuple(errors),
            implementation_notes=tuple(notes),
            flattened_includes=tuple(resolutions),
        )

    def resolve_include(
        self,
        include_domain: str,
        options: FlatteningOptions | None = None,
    ) -> Result[IncludeResolution]:
        """Resolve the SPF chain behind one include into networks.

        Only pass (``+``) terms contribute.  A DNS failure anywhere in the
        chain, a circular include or a chain deeper than
        ``options.max_depth`` fails the whole include.
        """
        options = options or FlatteningOptions()
        root = include_domain.strip().lower().rstrip(".")

        networks: set[IPNetwork] = set()
        kept: list[str] = []
        notes: list[str] = []
        queries = 0

        visited = {root}
        stack: list[tuple[str, int, tuple[str, ...]]] = [(root, 0, (root,))]

        while stack:
            domain, depth, path = stack.pop()

            try:
                record = self._fetch_record(domain)
            except DnsLookupError as exc:
                return Err(f"DNS lookup for {domain} failed ({exc.error_type}): {exc}", kind="dns")
            except ValueError as exc:
                return Err(str(exc), kind="record")
            queries += 1

            if not record.is_valid:
                notes.append(f"SPF record of {domain} has errors: {'; '.join(record.errors)}")

            children: list[str] = []
            for mechanism in record.mechanisms:
                if mechanism.type == "all":
                    continue
                if mechanism.qualifier != "+":
                    notes.append(f"Skipped {mechanism} in {domain}: only pass terms are flattened")
                    continue

                if mechanism.type in ("ip4", "ip6"):
                    try:
                        networks.add(ipaddress.ip_network(mechanism.value, strict=False))
                    except ValueError:
                        notes.append(f"Skipped malformed {mechanism} in {domain}")
                elif mechanism.type in ("a", "mx"):
                    try:
                        found, cost = self._resolve_host_terms(mechanism, domain)
                    except DnsLookupError as exc:
                        return Err(
                            f"DNS lookup for {mechanism} in {domain} failed "
                            f"({exc.error_type}): {exc}",
                            kind="dns",
                        )
                    except ValueError:
                        notes.append(f"Skipped malformed {mechanism} in {domain}")
                        continue
                    networks.update(found)
                    queries += cost
                elif mechanism.type == "include":
                    child = mechanism.value.lower().rstrip(".")
                    if "%" in child or not options.include_subdomains:
                        kept.append(child)
                        continue
                    children.append(child)
                else:
                    notes.append(f"Skipped {mechanism} in {domain}: cannot be flattened")

            if record.redirect and record.all_mechanism is None:
                children.append(record.redirect.lower().rstrip("."))

            for child in children:
                if child in path:
                    loop = " -> ".join(path + (child,))
                    return Err(f"Circular include detected: {loop}", kind="circular")
                if child in visited:
                    continue
                if depth + 1 > options.max_depth:
                    return Err(
                        f"Include chain below {root} exceeds the maximum depth of "
                        f"{options.max_depth} at {child}",
                        kind="recursion",
                    )
                visited.add(child)
                stack.append((child, depth + 1, path + (child,)))

        ordered = sorted(networks, key=lambda n: (n.version, n.network_address, n.prefixlen))
        return Ok(IncludeResolution(
            include_domain=root,
            networks=tuple(str(n) for n in ordered),
            kept_includes=tuple(dict.fromkeys(kept)),
            dns_queries=queries,
            notes=tuple(notes),
        ))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _selected_includes(
        record: SPFRecord,
        suggestions: Sequence[OptimizationSuggestion | str],
        warnings: list[str],
    ) -> list[str]:
        present = {d.lower().rstrip(".") for d in record.includes}
        targets: list[str] = []
        for suggestion in suggestions:
            if isinstance(suggestion, OptimizationSuggestion):
                if suggestion.type != "flatten_include":
                    warnings.append(
                        f"Ignored {suggestion.type} suggestion for {suggestion.mechanism}; "
                        "only include flattening is applied"
                    )
                    continue
                domain = suggestion.mechanism
            else:
                domain = str(suggestion)
            domain = domain.strip().lower().rstrip(".")
            if domain.startswith("include:"):
                domain = domain[len("include:"):]
            if domain not in present:
                warnings.append(f"include:{domain} is not part of the record")
                continue
            if domain not in targets:
                targets.append(domain)
        return targets

    def _fetch_record(self, domain: str) -> SPFRecord:
        spf_texts = [
            text for text in self.resolver.resolve_txt(domain) if is_spf_text(text)
        ]
        if not spf_texts:
            raise ValueError(f"No SPF record found at {domain}")
        if len(spf_texts) > 1:
            raise ValueError(f"Multiple SPF records found at {domain}")
        return parse_spf_string(spf_texts[0], domain)

    def _resolve_host_terms(
        self,
        mechanism: SPFMechanism,
        domain: str,
    ) -> tuple[set[IPNetwork], int]:
        """Resolve an a/mx term to networks, honouring its CIDR suffix."""
        host, _, cidr = mechanism.value.partition("/")
        host = (host or domain).lower()
        cidr4, _, cidr6 = cidr.partition("/")
        prefixes = {4: int(cidr4) if cidr4 else 32, 6: int(cidr6) if cidr6 else 128}

        if mechanism.type == "mx":
            hosts = self.resolver.resolve_mx(host)
        else:
            hosts = [host]

        found: set[IPNetwork] = set()
        for target in hosts:
            for address in self.resolver.resolve_addresses(target):
                ip = ipaddress.ip_address(address)
                found.add(ipaddress.ip_network(f"{ip}/{prefixes[ip.version]}", strict=False))
        cost = len(hosts) + (1 if mechanism.type == "mx" else 0)
        return found, cost

    def _replacement_terms(
        self,
        resolution: IncludeResolution,
        record: SPFRecord,
        options: FlatteningOptions,
    ) -> list[SPFMechanism]:
        qualifier = "+"
        for mechanism in record.mechanisms:
            if mechanism.type == "include" and mechanism.value.lower().rstrip(".") == resolution.include_domain:
                qualifier = mechanism.qualifier
                break

        networks = [ipaddress.ip_network(n) for n in resolution.networks]
        if options.consolidate_cidr:
            networks = consolidate_networks(networks, options.consolidation_slack)
        else:
            networks = sorted(networks, key=lambda n: (n.version, n.network_address, n.prefixlen))

        terms = [network_term(n, qualifier) for n in networks]
        terms.extend(SPFMechanism("include", qualifier, d, "") for d in resolution.kept_includes)
        return terms

    def _esp_warnings(self, resolutions: dict[str, IncludeResolution]) -> list[str]:
        warnings: list[str] = []
        for domain in resolutions:
            profile = self.classifier.get_stability_profile(domain)
            reasons = []
            if not profile.is_stable:
                reasons.append("is not stable")
            if not profile.auto_update_safe:
                reasons.append("is not safe for automatic updates")
            if reasons:
                warnings.append(
                    f"{profile.esp_name} ({domain}) {' and '.join(reasons)}; "
                    "manual monitoring of the flattened addresses is required"
                )
        return warnings


# ---------------------------------------------------------------------------
# Record rebuild
# ---------------------------------------------------------------------------


def _rebuild(
    mechanisms: Sequence[SPFMechanism],
    replacements: dict[str, list[SPFMechanism]],
    preserve_order: bool,
) -> list[SPFMechanism]:
    """Return the mechanism list with flattened includes replaced.

    Every term is emitted once; a flattened address already listed
    elsewhere in the record is not repeated.
    """

    def replaced(mechanism: SPFMechanism) -> bool:
        return mechanism.type == "include" and mechanism.value.lower().rstrip(".") in replacements

    untouched = [m for m in mechanisms if not replaced(m)]
    emitted: set[str] = {str(m) for m in untouched}
    result: list[SPFMechanism] = []

    def new_terms(include_domain: str) -> list[SPFMechanism]:
        terms = []
        for term in replacements[include_domain]:
            text = str(term)
            if text not in emitted:
                emitted.add(text)
                terms.append(term)
        return terms

    if preserve_order:
        for mechanism in mechanisms:
            if replaced(mechanism):
                result.extend(new_terms(mechanism.value.lower().rstrip(".")))
            else:
                result.append(mechanism)
        return result

    appended: list[SPFMechanism] = []
    for mechanism in mechanisms:
        if replaced(mechanism):
            appended.extend(new_terms(mechanism.value.lower().rstrip(".")))

    insert_at = next(
        (i for i, m in enumerate(untouched) if m.type == "all"),
        len(untouched),
    )
    return untouched[:insert_at] + appended + untouched[insert_at:]


def split_record(text: str, max_ips: int, limit: int = MAX_STRING_LENGTH) -> list[str]:
    """Split *text* into TXT strings of at most *limit* characters and
    *max_ips* ip4/ip6 terms each.  The strings concatenate back to *text*."""
    chunks: list[str] = []
    current = ""
    current_ips = 0
    for index, term in enumerate(text.split(" ")):
        piece = term if index == 0 else f" {term}"
        is_ip = term.lstrip("+-~?").startswith(("ip4:", "ip6:"))
        too_long = len(current) + len(piece) > limit
        too_many = is_ip and current_ips >= max_ips
        if current and (too_long or too_many):
            chunks.append(current)
            current, current_ips = "", 0
        current += piece
        current_ips += 1 if is_ip else 0
    if current:
        chunks.append(current)

    # A single term longer than the limit still has to be cut.
    result: list[str] = []
    for chunk in chunks:
        result.extend(split_txt_strings(chunk, limit) if len(chunk) > limit else [chunk])
    return result
