"""
Workshop Discovery
SQLAlchemy database instance shared by every model module.

Usage:
    from discovery.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
