"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi seed-questions questions.json
    flask --app wsgi db upgrade
"""

from intake import create_app

app = create_app()
