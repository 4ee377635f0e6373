from eximpilot.store.base import PURGEABLE_TABLES, Repository
from eximpilot.store.sql import SQLRepository

__all__ = ["PURGEABLE_TABLES", "Repository", "SQLRepository"]
