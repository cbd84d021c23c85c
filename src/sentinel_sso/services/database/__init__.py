from .database import DatabaseManager

__all__ = ["DatabaseManager"]
