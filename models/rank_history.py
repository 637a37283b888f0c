# models/rank_history.py
"""
RankHistory - one row per member per evaluated period.
"""
from sqlalchemy import Column, Integer, String, ForeignKey, UniqueConstraint
from models.base import Base, AuditMixin

TRANSITION_PROMOTED = "promoted"
TRANSITION_DEMOTED = "demoted"
TRANSITION_UNCHANGED = "unchanged"


class RankHistory(Base, AuditMixin):
    __tablename__ = 'rank_history'

    historyID = Column(Integer, primary_key=True, autoincrement=True)

    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    periodID = Column(Integer, ForeignKey('periods.periodID'), nullable=False, index=True)

    previousRank = Column(String(50), nullable=False)
    newRank = Column(String(50), nullable=False)
    transition = Column(String(20), nullable=False)

    # Qualification inputs at decision time
    teamSize = Column(Integer, nullable=True)
    activeRecruits = Column(Integer, nullable=True)

    notes = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint('memberID', 'periodID', name='uq_rank_history_member_period'),
    )

    def __repr__(self):
        return (
            f"<RankHistory(memberID={self.memberID}, periodID={self.periodID}, "
            f"{self.previousRank} → {self.newRank})>"
        )
