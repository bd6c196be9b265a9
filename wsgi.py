"""
WSGI entry point for SPF Watch.

WSGI hosts import this module and look for the ``app`` variable.  The
development server can also be started by running this file directly.

SETUP
=====
  pip install -e .
  python init_db.py            # create tables, seed settings and ESP table
  python wsgi.py               # development server on http://127.0.0.1:5000/

  Set DATABASE_URL to an absolute path in production, e.g.
    sqlite:////srv/spfwatch/instance/spfwatch.db
  (three slashes = protocol, one slash = filesystem root)

  Scheduled monitoring runs through scheduled_check.py (see its docstring
  for cron lines).

For testing:

  pip install -e .[test]
  pytest tests/ -v
"""

from __future__ import annotations

from spfwatch import create_app

app = create_app()

if __name__ == "__main__":
    app.run(debug=True)
