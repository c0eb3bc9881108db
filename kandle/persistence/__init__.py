"""Persistence layer for SQLite storage."""

from kandle.persistence.database import Database
from kandle.persistence.repository import Repository

__all__ = ["Database", "Repository"]
