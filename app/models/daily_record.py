"""
Daily Record Model

Snapshot of one calendar day's reflection: the notes on the board, the
connections between them, the note picked as discussion topic and the
coaching chat transcript. One row per date; saves upsert by date.
"""

from datetime import datetime
from sqlalchemy import Column, Integer, DateTime, Date, JSON
from app.database import Base


class DailyRecord(Base):
    __tablename__ = "daily_records"

    id = Column(Integer, primary_key=True)
    record_date = Column(Date, nullable=False, index=True, unique=True)
    items = Column(JSON, nullable=False, default=list)
    connections = Column(JSON, nullable=False, default=list)
    selected_item = Column(JSON, nullable=True)
    chat_messages = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def to_dict(self) -> dict:
        """Wire form used by the JSON API and the history page."""
        return {
            "date": self.record_date.isoformat(),
            "items": list(self.items or []),
            "connections": list(self.connections or []),
            "selectedItem": self.selected_item,
            "chatMessages": list(self.chat_messages or []),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<DailyRecord {self.record_date}>"
