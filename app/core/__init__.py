"""Core app configuration, logging and database."""

from app.core.config import Settings, get_settings, settings
from app.core.database import SessionLocal, build_engine, get_db

__all__ = ["Settings", "SessionLocal", "build_engine", "get_settings", "settings", "get_db"]
