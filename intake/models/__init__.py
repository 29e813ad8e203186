"""
Intake Progress Service
Shared Flask-SQLAlchemy handle.

The extension is bound to the app in ``create_app()``; services receive
``db.session`` by injection and never open their own connections.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
