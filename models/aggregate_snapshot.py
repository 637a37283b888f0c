# models/aggregate_snapshot.py
"""
Frozen team counters for one member in one period.
Immutable once written (see models/listeners/ledger_listeners.py).
"""
from sqlalchemy import Column, Integer, ForeignKey, UniqueConstraint
from models.base import Base, AuditMixin


class AggregateSnapshot(Base, AuditMixin):
    __tablename__ = 'aggregate_snapshots'

    snapshotID = Column(Integer, primary_key=True, autoincrement=True)

    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    periodID = Column(Integer, ForeignKey('periods.periodID'), nullable=False, index=True)

    teamSize = Column(Integer, nullable=False, default=0)
    activeTeamCount = Column(Integer, nullable=False, default=0)
    activeRecruitsCount = Column(Integer, nullable=False, default=0)
    retentionRateBp = Column(Integer, nullable=False, default=0)  # basis points, 10000 = 100%

    __table_args__ = (
        UniqueConstraint('memberID', 'periodID', name='uq_aggregate_snapshot_member_period'),
    )

    def __repr__(self):
        return (
            f"<AggregateSnapshot(memberID={self.memberID}, periodID={self.periodID}, "
            f"team={self.teamSize}, active={self.activeTeamCount})>"
        )
