"""
Core314 Automation Engine - Core Package
========================================

Configuration, persistence, models, and schemas.
"""

from core314.core.config import settings
from core314.core.database import Base, get_db

__all__ = ["Base", "get_db", "settings"]
