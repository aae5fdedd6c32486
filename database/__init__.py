"""
Database layer — SQLAlchemy async over PostgreSQL (production) or SQLite.

Quick start:
  from database import Database
  db = Database.from_settings(settings.database)
  async with db.session() as session:
      ...
"""
from database.models import (
    Base, ConversationRow, InboundMessageRow, ReplyJobRow, OutboundMessageRow,
)
from database.session import Database
from database.messages import (
    load_conversation, load_inbound_message, load_outbound_for_job, load_timeline,
)
from database.outbound import OutboundWriter

__all__ = [
    # ORM models
    "Base", "ConversationRow", "InboundMessageRow", "ReplyJobRow", "OutboundMessageRow",
    # Engine + sessions
    "Database",
    # Read-side lookups
    "load_conversation", "load_inbound_message", "load_outbound_for_job", "load_timeline",
    # Write-back
    "OutboundWriter",
]
