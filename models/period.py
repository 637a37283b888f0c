# models/period.py
"""
Period model - weekly settlement cycle with persisted checkpoint.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from models.base import Base, AuditMixin

PERIOD_OPEN = "open"
PERIOD_EVALUATING = "evaluating"
PERIOD_SETTLED = "settled"


class Period(Base, AuditMixin):
    __tablename__ = 'periods'

    periodID = Column(Integer, primary_key=True, autoincrement=True)

    startsAt = Column(DateTime, nullable=False, unique=True)
    endsAt = Column(DateTime, nullable=False)

    status = Column(String(20), nullable=False, default=PERIOD_OPEN, index=True)
    settledAt = Column(DateTime, nullable=True)

    # Cycle progress (survives restarts)
    checkpoint = Column(JSON, nullable=True)
    # Structure:
    # {
    #   "steps": ["snapshot", "qualify"],
    #   "halted": [17, 42],
    #   "resettled": [42]
    # }

    def __repr__(self):
        return (
            f"<Period(periodID={self.periodID}, {self.startsAt} - {self.endsAt}, "
            f"status={self.status})>"
        )
