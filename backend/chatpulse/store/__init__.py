"""Durable stores: user directory, messages and groups on DuckDB."""
from .database import Database
from .directory import UserDirectory
from .groups import GroupStore
from .messages import MessageStore, Receipt
from .schemas import Group, Message, MessageType, RosterEntry, User, UserCredentials

__all__ = [
    "Database",
    "Group",
    "GroupStore",
    "Message",
    "MessageStore",
    "MessageType",
    "Receipt",
    "RosterEntry",
    "User",
    "UserCredentials",
    "UserDirectory",
]
