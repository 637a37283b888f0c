# models/processed_event.py
"""
Idempotency keys for consumed events.
"""
from sqlalchemy import Column, Integer, String, DateTime
from models.base import Base, _get_current_time


class ProcessedEvent(Base):
    __tablename__ = 'processed_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    eventKey = Column(String(255), nullable=False, unique=True)
    eventType = Column(String(50), nullable=False)
    resultRef = Column(Integer, nullable=True)  # id of the row the event produced
    processedAt = Column(DateTime, default=_get_current_time)

    def __repr__(self):
        return f"<ProcessedEvent(eventKey={self.eventKey}, type={self.eventType})>"
