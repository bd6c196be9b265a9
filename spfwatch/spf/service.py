"""Caller-facing SPF operations for one user."""

from __future__ import annotations

import logging
from typing import Sequence

from spfwatch.spf.analysis import analyze_record
from spfwatch.spf.esp import EspClassifier
from spfwatch.spf.flattener import SpfFlattener
from spfwatch.spf.history import record_operation
from spfwatch.spf.monitor import SpfMonitor
from spfwatch.spf.parser import parse_spf_record
from spfwatch.spf.resolver import DnsResolver, load_dns_settings
from spfwatch.spf.types import (
    ESPStabilityProfile,
    FlatteningOptions,
    FlatteningResult,
    IPChangeEvent,
    MonitoringResult,
    OptimizationSuggestion,
    SpfAnalysis,
    SPFRecord,
)

logger = logging.getLogger(__name__)

# Shared across services so ESP profiles are cached process-wide.
_default_classifier: EspClassifier | None = None


def default_classifier() -> EspClassifier:
    global _default_classifier
    if _default_classifier is None:
        _default_classifier = EspClassifier(ttl=load_dns_settings().esp_cache_ttl or 3600)
    return _default_classifier


class SpfService:
    """Facade over the parser, classifier, flattener and monitor.

    Requires an application context unless both *resolver* and
    *classifier* are supplied and no persistence is used.
    """

    def __init__(self, user_id: str, resolver=None, classifier: EspClassifier | None = None) -> None:
        self.user_id = user_id
        self.resolver = resolver or DnsResolver()
        self.classifier = classifier or default_classifier()

    def parse_spf_record(self, domain: str) -> SPFRecord:
        return parse_spf_record(domain, self.resolver)

    def analyze(self, domain: str) -> SpfAnalysis:
        return analyze_record(self.parse_spf_record(domain), self.classifier)

    def flatten(
        self,
        record: SPFRecord,
        suggestions: Sequence[OptimizationSuggestion | str],
        options: FlatteningOptions | None = None,
        persist: bool = False,
    ) -> FlatteningResult:
        """Flatten *record*; with *persist* the run is stored in the history."""
        options = options or FlatteningOptions()
        result = SpfFlattener(self.resolver, self.classifier).flatten(record, suggestions, options)
        if persist:
            # Normalized names of the includes actually flattened; these are monitored once approved.
            record_operation(self.user_id, record.domain, record, result, result.flattened_includes, options)
        return result

    def check_domain(self, domain: str) -> MonitoringResult:
        settings = load_dns_settings()
        monitor = SpfMonitor(
            self.user_id,
            self.resolver,
            self.classifier,
            max_workers=settings.check_concurrency or 5,
        )
        return monitor.check_domain(domain, max_depth=settings.max_include_depth or 10)

    def check_domain_changes(self, domain: str) -> list[IPChangeEvent]:
        return list(self.check_domain(domain).changes)

    def get_esp_stability_rating(self, include_domain: str) -> ESPStabilityProfile:
        return self.classifier.get_stability_profile(include_domain)
