"""
Value objects shared by the SPF core.

All types are frozen dataclasses: a parsed record, a flattening result or a
change event never changes after it is built.  Sequence fields are tuples
for the same reason.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

# Mechanism types that cost one DNS lookup each.  mx and ptr are counted
# once per directive, not once per resolved MX/PTR record.
LOOKUP_MECHANISMS: frozenset[str] = frozenset({"include", "a", "mx", "ptr", "exists"})

MAX_LOOKUPS = 10
MAX_STRING_LENGTH = 255
MAX_RECORD_LENGTH = 450


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Parsed records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SPFMechanism:
    """One directive of an SPF record.

    ``value`` holds the text after the mechanism name: the domain of an
    include, the network of an ip4/ip6, or for a/mx the optional
    ``domain`` and ``/cidr`` suffix (``"mail.example.com/24"`` or ``"/24"``).
    """

    type: str
    qualifier: str = "+"
    value: str = ""
    raw_text: str = ""

    @property
    def lookup_cost(self) -> int:
        return 1 if self.type in LOOKUP_MECHANISMS else 0

    def __str__(self) -> str:
        qualifier = "" if self.qualifier == "+" else self.qualifier
        if not self.value:
            return f"{qualifier}{self.type}"
        if self.value.startswith("/"):
            return f"{qualifier}{self.type}{self.value}"
        return f"{qualifier}{self.type}:{self.value}"


@dataclass(frozen=True)
class SPFModifier:
    """A ``name=value`` term such as ``redirect=`` or ``exp=``."""

    name: str
    value: str

    def __str__(self) -> str:
        return f"{self.name}={self.value}"


@dataclass(frozen=True)
class SPFRecord:
    """Parsed representation of one domain's SPF TXT value."""

    raw: str
    domain: str = ""
    mechanisms: tuple[SPFMechanism, ...] = ()
    modifiers: tuple[SPFModifier, ...] = ()
    total_lookups: int = 0
    is_valid: bool = False
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    strings: tuple[str, ...] = ()

    @property
    def redirect(self) -> str | None:
        for modifier in self.modifiers:
            if modifier.name == "redirect":
                return modifier.value
        return None

    @property
    def modifier_lookups(self) -> int:
        """Lookups spent by modifiers (``redirect=`` costs one)."""
        return 1 if self.redirect else 0

    @property
    def effective_lookups(self) -> int:
        """Mechanism and modifier lookups together, checked against the limit of 10."""
        return self.total_lookups + self.modifier_lookups

    @property
    def includes(self) -> list[str]:
        return [m.value for m in self.mechanisms if m.type == "include"]

    @property
    def all_mechanism(self) -> SPFMechanism | None:
        for mechanism in self.mechanisms:
            if mechanism.type == "all":
                return mechanism
        return None


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OptimizationSuggestion:
    """Advisory output of record analysis; never persisted on its own."""

    type: str  # flatten_include / remove_ptr / remove_redundant / use_ip4
    mechanism: str
    severity: str  # low / medium / high
    description: str
    current_lookups: int = 0
    estimated_savings: int = 0
    implementation: str = ""


@dataclass(frozen=True)
class LookupBreakdown:
    include: int = 0
    a: int = 0
    mx: int = 0
    ptr: int = 0
    exists: int = 0
    redirect: int = 0

    @property
    def total(self) -> int:
        return self.include + self.a + self.mx + self.ptr + self.exists + self.redirect


@dataclass(frozen=True)
class SpfAnalysis:
    """A parsed record together with its suggestions and risk assessment."""

    record: SPFRecord
    suggestions: tuple[OptimizationSuggestion, ...]
    breakdown: LookupBreakdown
    risk_level: str  # low / medium / high / critical
    compliance_status: str  # compliant / warning / failing
    recommended_actions: tuple[str, ...] = ()
    potential_savings: int = 0
    macros: MacroAnalysis | None = None


# ---------------------------------------------------------------------------
# Macros (RFC 7208 section 7)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SPFMacro:
    """One ``%{...}`` macro found in a term.

    ``letter`` is lowercase; ``url_escape`` records an uppercase letter.
    Malformed macros keep their raw text with ``is_valid`` cleared.
    """

    raw: str
    letter: str
    position: int = 0
    digits: int | None = None
    reverse: bool = False
    delimiters: str = ""
    url_escape: bool = False
    is_valid: bool = True
    errors: tuple[str, ...] = ()
    security_risk: str = "low"  # low / medium / high

    @property
    def modifier_count(self) -> int:
        return (self.digits is not None) + self.reverse + bool(self.delimiters)


@dataclass(frozen=True)
class MacroContext:
    """Message values a receiver substitutes into macros."""

    sender_ip: str = "192.0.2.100"
    sender: str = "test@example.com"
    domain: str = "example.com"
    helo: str = "mail.example.com"
    receiver: str = "unknown"
    validated_domain: str = "unknown"
    timestamp: int | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> MacroContext:
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise TypeError(f"Macro context must be an object, not {type(data).__name__}")
        known = set(cls.__dataclass_fields__)
        values = {k: v for k, v in data.items() if k in known}
        for name, value in values.items():
            if name == "timestamp":
                if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                    raise ValueError(f"timestamp must be an integer, got {value!r}")
            elif not isinstance(value, str):
                raise ValueError(f"{name} must be a string, got {value!r}")
        return cls(**values)


@dataclass(frozen=True)
class MacroVulnerability:
    type: str  # dns_amplification / information_disclosure / enumeration
    severity: str  # low / medium / high
    description: str
    macro: str
    term: str
    remediation: str = ""


@dataclass(frozen=True)
class MacroAnalysis:
    """Security, cost and complexity assessment of a record's macros."""

    macros: tuple[SPFMacro, ...] = ()
    vulnerabilities: tuple[MacroVulnerability, ...] = ()
    risk_level: str = "low"  # low / medium / high / critical
    dns_lookups_per_email: float = 0.0
    processing_overhead: str = "minimal"  # minimal / moderate / significant / severe
    complexity_score: int = 0
    maintenance_risk: str = "low"
    recommendations: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()

    @property
    def readability_score(self) -> int:
        return 100 - self.complexity_score


@dataclass(frozen=True)
class MacroPreview:
    text: str
    expanded: str | None
    is_valid: bool
    errors: tuple[str, ...] = ()
    security_risk: str = "low"
    macros: tuple[SPFMacro, ...] = ()


# ---------------------------------------------------------------------------
# ESP classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ESPStabilityProfile:
    include_domain: str
    esp_name: str
    esp_type: str = "unknown"
    is_stable: bool = False
    requires_monitoring: bool = True
    check_frequency: str = "daily"  # hourly / daily / weekly
    change_frequency: str = "weekly"  # rare / monthly / weekly / daily
    auto_update_safe: bool = False
    known_ip_ranges: tuple[str, ...] = ()
    is_known: bool = False
    description: str = ""


# ---------------------------------------------------------------------------
# Flattening
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FlatteningOptions:
    include_subdomains: bool = True
    consolidate_cidr: bool = True
    preserve_order: bool = True
    max_ips_per_record: int = 50
    split_oversized: bool = True
    consolidation_slack: float = 0.25
    max_depth: int = 10

    @classmethod
    def from_dict(cls, data: dict | None) -> FlatteningOptions:
        """Build options from a JSON payload, ignoring unknown keys.

        Values are coerced to the field's type: booleans accept
        ``true``/``false``/``1``/``0``/``yes``/``no``, integers accept digit
        strings and must be at least 1, and ``consolidation_slack`` must lie
        between 0 and 1.

        Raises:
            TypeError: *data* is not a mapping.
            ValueError: A value cannot be coerced or is out of range.
        """
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise TypeError(f"Flattening options must be an object, not {type(data).__name__}")

        values = {}
        for name, value in data.items():
            if name in _BOOL_OPTIONS:
                values[name] = _coerce_bool(name, value)
            elif name in _INT_OPTIONS:
                values[name] = _coerce_int(name, value)
            elif name == "consolidation_slack":
                values[name] = _coerce_slack(value)
        return cls(**values)


_BOOL_OPTIONS = frozenset({"include_subdomains", "consolidate_cidr", "preserve_order", "split_oversized"})
_INT_OPTIONS = frozenset({"max_ips_per_record", "max_depth"})
_TRUE_STRINGS = frozenset({"true", "1", "yes"})
_FALSE_STRINGS = frozenset({"false", "0", "no"})


def _coerce_bool(name: str, value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def _coerce_int(name: str, value) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
    else:
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if number < 1:
        raise ValueError(f"{name} must be at least 1, got {number}")
    return number


def _coerce_slack(value) -> float:
    if isinstance(value, bool):
        raise ValueError(f"consolidation_slack must be a number, got {value!r}")
    try:
        slack = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"consolidation_slack must be a number, got {value!r}") from None
    if not 0 <= slack <= 1:
        raise ValueError(f"consolidation_slack must be between 0 and 1, got {slack}")
    return slack


@dataclass(frozen=True)
class IncludeResolution:
    """Everything one ``include:`` term expanded to."""

    include_domain: str
    networks: tuple[str, ...] = ()
    kept_includes: tuple[str, ...] = ()
    dns_queries: int = 0
    notes: tuple[str, ...] = ()


@dataclass(frozen=True)
class FlatteningResult:
    success: bool
    flattened_record: str = ""
    txt_strings: tuple[str, ...] = ()
    original_lookups: int = 0
    new_lookups: int = 0
    ip_count: int = 0
    resolved_ips: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    implementation_notes: tuple[str, ...] = ()
    flattened_includes: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IPChangeEvent:
    domain: str
    include_domain: str
    esp_name: str
    change_type: str  # added / removed / modified
    added: tuple[str, ...]
    removed: tuple[str, ...]
    previous_ips: tuple[str, ...]
    current_ips: tuple[str, ...]
    impact: str  # low / medium / high / critical
    auto_update_safe: bool
    risk_factors: tuple[str, ...] = ()
    recommended_action: str = ""
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class MonitoringResult:
    domain: str
    status: str  # healthy / changed / error
    changes: tuple[IPChangeEvent, ...] = ()
    include_states: dict = field(default_factory=dict)
    errors: tuple[str, ...] = ()
    checked_at: datetime = field(default_factory=_utcnow)
    next_check: datetime | None = None

    @property
    def auto_update_eligible(self) -> bool:
        return any(event.auto_update_safe for event in self.changes)
