from db.models import Base, RuntimeStateEntry, RuntimeStateMeta
from db.session import SessionManager

__all__ = ["Base", "RuntimeStateEntry", "RuntimeStateMeta", "SessionManager"]
