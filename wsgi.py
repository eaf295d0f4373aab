"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi notifications retry-failed
    gunicorn wsgi:app
"""

from changeflow import create_app

app = create_app()
