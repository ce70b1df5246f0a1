"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-validation-rules
"""

from icsr import create_app

app = create_app()
