"""
Database initialisation script for SPF Watch.

Creates all tables, seeds the DnsSettings singleton from the ``SPF_*``
configuration values, copies the built-in ESP classification table into
``esp_classifications`` (so it can be edited per deployment), and enables
SQLite WAL mode.

Safe to run multiple times (idempotent).  Existing ESP rows are left as
they are; only missing include domains are added.

Usage:
    python init_db.py
"""

from __future__ import annotations

import sys

from sqlalchemy import text

from spfwatch import create_app, db
from spfwatch.models import DnsSettings, EspClassification
from spfwatch.spf.esp import BUILTIN_ESPS
from spfwatch.spf.resolver import default_dns_settings


def seed_esp_classifications() -> int:
    """Insert built-in ESP rows that are not stored yet; return the count added."""
    existing = set(db.session.execute(db.select(EspClassification.include_domain)).scalars())
    added = 0
    for include_domain, (name, esp_type, stable, monitoring, safe) in BUILTIN_ESPS.items():
        if include_domain in existing:
            continue
        db.session.add(
            EspClassification(
                include_domain=include_domain,
                esp_name=name,
                esp_type=esp_type,
                is_stable=stable,
                requires_monitoring=monitoring,
                consolidation_safe=safe,
                change_frequency="rare" if stable else "weekly",
            )
        )
        added += 1
    db.session.commit()
    return added


def init_database() -> None:
    """Initialise the database within the Flask application context."""
    app = create_app()

    with app.app_context():
        # ------------------------------------------------------------------
        # Create all tables (safe to call on existing databases)
        # ------------------------------------------------------------------
        db.create_all()
        print("[init_db] Tables created / verified.")

        if db.engine.dialect.name == "sqlite":
            with db.engine.connect() as conn:
                mode = conn.execute(text("PRAGMA journal_mode=WAL")).scalar()
            print(f"[init_db] SQLite journal_mode = {mode}")

        # ------------------------------------------------------------------
        # DnsSettings singleton (id=1)
        # ------------------------------------------------------------------
        if db.session.get(DnsSettings, 1) is None:
            db.session.add(default_dns_settings(app.config))
            db.session.commit()
            print("[init_db] DnsSettings singleton seeded (id=1).")
        else:
            print("[init_db] DnsSettings singleton already exists - skipped.")

        added = seed_esp_classifications()
        print(f"[init_db] ESP classifications seeded ({added} added).")

        print("[init_db] Initialisation complete.")


if __name__ == "__main__":
    try:
        init_database()
    except Exception as exc:  # pylint: disable=broad-except
        print(f"[init_db] ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
