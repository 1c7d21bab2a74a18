"""Beginner-friendly overview for this module.

WHAT: One row per persisted session key (access token, refresh token, cached profile...).
WHEN: Read and written by the SQL session store on every credential access.
WHY: Gives the client a durable key-value store that survives process restarts.
HOW: A plain two-column table; values are stored as text.

File: authbridge/models/session_entry.py
"""


from __future__ import annotations
from sqlalchemy import Column, Text
from ..db.session import Base


class SessionEntry(Base):
    __tablename__ = "session_entries"

    key = Column(Text, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)
