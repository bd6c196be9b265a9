"""
Shared pytest fixtures for the SPF Watch test suite.

All fixtures use an in-memory SQLite database so tests are fully
isolated and require no external services or real DNS lookups.  DNS is
served by ``FakeResolver``, a dict-backed stand-in for DnsResolver.
"""

from __future__ import annotations

import threading

import pytest

from spfwatch import create_app
from spfwatch import db as _db
from spfwatch.models import DnsSettings
from spfwatch.spf.esp import EspClassifier
from spfwatch.utils.rate_limit import clear_all_rate_limits


# ---------------------------------------------------------------------------
# Test configuration
# ---------------------------------------------------------------------------


class TestConfig:
    """Minimal Flask config for automated testing."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = "test-secret-key-not-for-production"
    # NOTE: Do NOT set SERVER_NAME here; it causes 404s in the test client
    # because all routes would need the Host header to match exactly.
    SPF_CHECK_RATE_LIMIT_SECONDS = 60
    ITEMS_PER_PAGE = 25


# ---------------------------------------------------------------------------
# Fake DNS
# ---------------------------------------------------------------------------


class FakeResolver:
    """DnsResolver stand-in backed by plain dicts.

    Args:
        txt:       domain -> list of TXT values (a value may be a list of
                   character-strings to simulate split records)
        addresses: hostname -> list of A/AAAA addresses
        mx:        domain -> list of exchange hostnames
        failures:  domain -> exception class raised for any query of it
    """

    def __init__(self, txt=None, addresses=None, mx=None, failures=None):
        self.txt = dict(txt or {})
        self.addresses = dict(addresses or {})
        self.mx = dict(mx or {})
        self.failures = dict(failures or {})
        self.queries: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def _check(self, domain, rdtype):
        domain = domain.lower().rstrip(".")
        with self._lock:
            self.queries.append((domain, rdtype))
        error_cls = self.failures.get(domain)
        if error_cls is not None:
            raise error_cls(domain, rdtype, f"{error_cls.error_type} for {domain}")
        return domain

    def resolve_txt_strings(self, domain):
        domain = self._check(domain, "TXT")
        return [list(v) if isinstance(v, (list, tuple)) else [v] for v in self.txt.get(domain, [])]

    def resolve_txt(self, domain):
        return ["".join(chunks) for chunks in self.resolve_txt_strings(domain)]

    def resolve_addresses(self, hostname):
        hostname = self._check(hostname, "A")
        return list(self.addresses.get(hostname, []))

    def resolve_mx(self, domain):
        domain = self._check(domain, "MX")
        return list(self.mx.get(domain, []))


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="function")
def app():
    """Create a Flask application instance backed by an in-memory database.

    A fresh database is created for every test function and torn down
    after the function completes, guaranteeing full isolation.
    """
    flask_app = create_app(TestConfig)

    with flask_app.app_context():
        _db.create_all()

        # Seed the DnsSettings singleton (id=1).  Concurrency 1 keeps the
        # scheduled runs sequential on the single in-memory connection.
        settings = DnsSettings(
            id=1,
            timeout_seconds=2.0,
            check_concurrency=1,
            max_include_depth=10,
            esp_cache_ttl=3600,
        )
        _db.session.add(settings)
        _db.session.commit()

        clear_all_rate_limits()

        yield flask_app

        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope="function")
def file_app(tmp_path):
    """Create an application backed by a SQLite file in WAL mode.

    Unlike the in-memory database every session gets its own connection,
    so threads and nested application contexts behave like separate
    processes sharing one database.
    """

    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'spfwatch.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30}}

    flask_app = create_app(FileConfig)

    with flask_app.app_context():
        _db.create_all()
        _db.session.add(DnsSettings(
            id=1,
            timeout_seconds=2.0,
            check_concurrency=4,
            max_include_depth=10,
            esp_cache_ttl=3600,
        ))
        _db.session.commit()

        clear_all_rate_limits()

        yield flask_app

        _db.session.remove()
        _db.drop_all()
        _db.engine.dispose()


@pytest.fixture(scope="function")
def client(app):
    """Return a Flask test client (no user header)."""
    return app.test_client()


@pytest.fixture(scope="function")
def db(app):
    """Yield the SQLAlchemy db object within an active application context."""
    with app.app_context():
        yield _db


@pytest.fixture
def classifier():
    """ESP classifier that only uses the built-in table."""
    return EspClassifier(use_store=False)


@pytest.fixture
def esp_dns():
    """A small DNS world: example.com including Google and a custom sender.

    _spf.google.com  -> two nested includes with ip4 ranges
    spf.sender.test  -> two single addresses
    """
    return FakeResolver(
        txt={
            "example.com": ["v=spf1 include:_spf.google.com include:spf.sender.test ip4:192.0.2.10 -all"],
            "_spf.google.com": [
                "v=spf1 include:_netblocks.google.com include:_netblocks2.google.com ~all"
            ],
            "_netblocks.google.com": ["v=spf1 ip4:35.190.247.0/24 ip4:64.233.160.0/19 ~all"],
            "_netblocks2.google.com": ["v=spf1 ip6:2001:4860:4000::/36 ~all"],
            "spf.sender.test": ["v=spf1 ip4:198.51.100.1 ip4:198.51.100.2 -all"],
        }
    )


@pytest.fixture
def fake_dns():
    """Return the FakeResolver class so tests can build their own DNS world."""
    return FakeResolver
