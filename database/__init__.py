"""
Database layer — Multi-backend persistence for campaign state.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  campaign = await store.get_campaign("tenant-1", "c1")
"""
from database.models import (
    Base, ContactRow, SenderIdentityRow, SuppressionRow, ContactCampaignRow,
    CampaignTransitionRow, OutboundMessageRow, ScheduledActionRow, MessageEventRow,
)
from database.session import (
    build_engine, build_session_factory, session_scope,
    init_db, close_db,
)
from database.store_base import BaseCampaignStore
from database.store import SqlCampaignStore
from database.store_memory import InMemoryCampaignStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "ContactRow", "SenderIdentityRow", "SuppressionRow", "ContactCampaignRow",
    "CampaignTransitionRow", "OutboundMessageRow", "ScheduledActionRow", "MessageEventRow",
    # Session management
    "build_engine", "build_session_factory", "session_scope",
    "init_db", "close_db",
    # Store interface
    "BaseCampaignStore",
    # Store backends
    "SqlCampaignStore", "InMemoryCampaignStore",
    # Factory
    "create_store",
]
