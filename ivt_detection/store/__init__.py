"""Backing stores: PostgREST (Supabase) and local SQLite."""

from .base import EventStore
from .postgrest import PostgrestEventStore
from .sqlite import SQLiteEventStore

__all__ = [
    "EventStore",
    "PostgrestEventStore",
    "SQLiteEventStore",
]
