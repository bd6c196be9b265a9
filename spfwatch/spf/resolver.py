"""
DNS resolution service for the SPF core.

Wraps dnspython with configurable nameservers and a hard per-query
timeout.  Queries are never retried inside a single check: a failed
lookup is reported once and the caller moves on.

Two layers are provided:

- ``query_dns()`` returns a plain result dict and never raises.  It is the
  only function that talks to dnspython.
- ``DnsResolver`` is the service object handed to the parser, flattener
  and monitor.  It returns plain lists and raises typed
  ``DnsLookupError`` subclasses for NXDOMAIN, SERVFAIL and timeouts.  An
  empty answer is an empty list, not an error.
"""

from __future__ import annotations

import logging
from typing import Any

import dns.exception
import dns.resolver

from spfwatch.models import DnsSettings

logger = logging.getLogger(__name__)

_DEFAULT_NAMESERVERS: list[str] = ["8.8.8.8", "1.1.1.1"]


# ---------------------------------------------------------------------------
# Typed errors
# ---------------------------------------------------------------------------


class DnsLookupError(Exception):
    """A DNS query that could not be answered."""

    error_type: str = "DNS_ERROR"

    def __init__(self, domain: str, rdtype: str, message: str | None = None) -> None:
        self.domain = domain
        self.rdtype = rdtype
        super().__init__(message or f"DNS error for {domain}/{rdtype}")


class DnsTimeout(DnsLookupError):
    error_type = "TIMEOUT"


class DnsNxDomain(DnsLookupError):
    error_type = "NXDOMAIN"


class DnsServFail(DnsLookupError):
    error_type = "SERVFAIL"


_ERROR_CLASSES: dict[str, type[DnsLookupError]] = {
    "TIMEOUT": DnsTimeout,
    "NXDOMAIN": DnsNxDomain,
    "SERVFAIL": DnsServFail,
}


# ---------------------------------------------------------------------------
# dnspython wrapper
# ---------------------------------------------------------------------------


def load_dns_settings() -> DnsSettings:
    """Load the DnsSettings singleton, or a transient one built from config.

    Requires an application context.
    """
    from flask import current_app  # noqa: PLC0415

    from spfwatch import db  # noqa: PLC0415

    settings = db.session.get(DnsSettings, 1)
    if settings is None:
        return default_dns_settings(current_app.config)
    return settings


def default_dns_settings(config) -> DnsSettings:
    """Return an unsaved DnsSettings populated from the ``SPF_*`` config keys."""
    return DnsSettings(
        id=1,
        timeout_seconds=config.get("SPF_DNS_TIMEOUT", 5.0),
        check_concurrency=config.get("SPF_CHECK_CONCURRENCY", 5),
        max_include_depth=config.get("SPF_MAX_INCLUDE_DEPTH", 10),
        esp_cache_ttl=config.get("SPF_ESP_CACHE_TTL", 3600),
    )


def create_resolver(settings: DnsSettings) -> dns.resolver.Resolver:
    """Create a fresh dns.resolver.Resolver configured from *settings*.

    A new instance is created every time so worker threads never share one.

    Args:
        settings: DnsSettings instance containing resolver config.

    Returns:
        A configured dns.resolver.Resolver instance.
    """
    resolver = dns.resolver.Resolver(configure=False)

    nameservers = settings.get_resolvers()
    resolver.nameservers = nameservers or list(_DEFAULT_NAMESERVERS)

    timeout = float(settings.timeout_seconds or 5.0)
    resolver.timeout = timeout
    # lifetime == timeout: one attempt per query, no retry window.
    resolver.lifetime = timeout
    resolver.retry_servfail = False

    return resolver


def query_dns(
    domain: str,
    rdtype: str,
    settings: DnsSettings | None = None,
) -> dict[str, Any]:
    """Execute a DNS query with robust error handling.

    Args:
        domain: The domain name to query.
        rdtype: DNS record type string (e.g. "TXT", "A", "AAAA", "MX").
        settings: Optional DnsSettings; loaded from DB if not provided.

    Returns:
        A dict with keys:
            success (bool): Whether the query returned records.
            records (list[str]): The resolved record strings.  TXT records
                have their character-strings joined.
            strings (list[list[str]]): TXT only - the individual
                character-strings of each record.
            error_type (str|None): NXDOMAIN, NO_ANSWER, SERVFAIL, TIMEOUT
                or DNS_ERROR.
            error_message (str|None): Human-readable error description.
    """
    if settings is None:
        settings = load_dns_settings()

    resolver = create_resolver(settings)

    try:
        answer = resolver.resolve(domain, rdtype)
        records: list[str] = []
        strings: list[list[str]] = []
        for rdata in answer:
            if rdtype.upper() == "TXT":
                parts = [s.decode("utf-8", errors="replace") for s in rdata.strings]
                strings.append(parts)
                records.append("".join(parts))
            else:
                records.append(rdata.to_text())

        logger.debug("DNS query %s/%s returned %d records", domain, rdtype, len(records))
        return {
            "success": True,
            "records": records,
            "strings": strings,
            "error_type": None,
            "error_message": None,
        }

    except dns.resolver.NXDOMAIN:
        logger.info("NXDOMAIN for %s/%s", domain, rdtype)
        return _failure("NXDOMAIN", f"Domain {domain} does not exist (NXDOMAIN)")

    except dns.resolver.NoAnswer:
        logger.info("NoAnswer for %s/%s", domain, rdtype)
        return _failure("NO_ANSWER", f"No {rdtype} records found for {domain}")

    except dns.resolver.NoNameservers:
        logger.warning("NoNameservers for %s/%s", domain, rdtype)
        return _failure(
            "SERVFAIL",
            f"No nameservers available for {domain} (SERVFAIL or all failed)",
        )

    except (dns.resolver.LifetimeTimeout, dns.exception.Timeout):
        logger.warning("Timeout for %s/%s", domain, rdtype)
        return _failure("TIMEOUT", f"DNS query timed out for {domain}/{rdtype}")

    except dns.exception.DNSException as exc:
        logger.error("DNSException for %s/%s: %s", domain, rdtype, exc)
        return _failure("DNS_ERROR", f"DNS error for {domain}/{rdtype}: {exc}")

    except Exception as exc:
        logger.exception("Unexpected error querying %s/%s", domain, rdtype)
        return _failure("DNS_ERROR", f"Unexpected error for {domain}/{rdtype}: {exc}")


def _failure(error_type: str, message: str) -> dict[str, Any]:
    return {
        "success": False,
        "records": [],
        "strings": [],
        "error_type": error_type,
        "error_message": message,
    }


# ---------------------------------------------------------------------------
# Resolution service
# ---------------------------------------------------------------------------


class DnsResolver:
    """DNS resolution service used by the SPF core.

    Holds a snapshot of the resolver settings so it can be used from
    worker threads without an application context.
    """

    def __init__(self, settings: DnsSettings | None = None) -> None:
        if settings is None:
            settings = load_dns_settings()
        self.settings = DnsSettings(
            resolvers=settings.resolvers,
            timeout_seconds=settings.timeout_seconds,
        )

    def resolve_txt(self, domain: str) -> list[str]:
        """Return the TXT records of *domain* with character-strings joined."""
        return self._records(domain, "TXT")

    def resolve_txt_strings(self, domain: str) -> list[list[str]]:
        """Return the TXT records of *domain* as lists of character-strings."""
        result = query_dns(domain, "TXT", self.settings)
        if result["success"]:
            return result["strings"]
        self._raise_for(domain, "TXT", result)
        return []

    def resolve_addresses(self, hostname: str) -> list[str]:
        """Return the IPv4 and IPv6 addresses of *hostname*."""
        addresses = self._records(hostname, "A")
        addresses.extend(self._records(hostname, "AAAA"))
        return addresses

    def resolve_mx(self, domain: str) -> list[str]:
        """Return the MX exchange hostnames of *domain*, best preference first."""
        exchanges: list[tuple[int, str]] = []
        for record in self._records(domain, "MX"):
            parts = record.split()
            if len(parts) == 2 and parts[0].isdigit():
                exchanges.append((int(parts[0]), parts[1].rstrip(".").lower()))
            elif parts:
                exchanges.append((0, parts[-1].rstrip(".").lower()))
        return [host for _, host in sorted(exchanges)]

    def _records(self, domain: str, rdtype: str) -> list[str]:
        result = query_dns(domain, rdtype, self.settings)
        if result["success"]:
            return list(result["records"])
        self._raise_for(domain, rdtype, result)
        return []

    @staticmethod
    def _raise_for(domain: str, rdtype: str, result: dict[str, Any]) -> None:
        """Raise the typed error for a failed *result*; NO_ANSWER is not an error."""
        error_type = result.get("error_type")
        if error_type == "NO_ANSWER":
            return
        error_cls = _ERROR_CLASSES.get(error_type or "", DnsLookupError)
        raise error_cls(domain, rdtype, result.get("error_message"))
