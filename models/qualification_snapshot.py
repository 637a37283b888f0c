# models/qualification_snapshot.py
"""
QualificationSnapshot - per member per period evaluation result.
Written for every member (pass included), never mutated.
"""
from sqlalchemy import Column, Integer, String, ForeignKey, JSON, UniqueConstraint
from models.base import Base, AuditMixin

QUALIFICATION_PASS = "pass"
QUALIFICATION_FAIL = "fail"
QUALIFICATION_PENDING = "pending"


class QualificationSnapshot(Base, AuditMixin):
    __tablename__ = 'qualification_snapshots'

    qualificationID = Column(Integer, primary_key=True, autoincrement=True)

    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    periodID = Column(Integer, ForeignKey('periods.periodID'), nullable=False, index=True)

    # Stay-qualified test against current rank
    rankKey = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)
    reasons = Column(JSON, nullable=False, default=list)

    # Promotion test against next rank (NULL at top of ladder)
    nextRankKey = Column(String(50), nullable=True)
    nextRankStatus = Column(String(20), nullable=True)
    nextRankReasons = Column(JSON, nullable=True)

    # Inputs used
    activeRecruitsCount = Column(Integer, nullable=False, default=0)
    teamSize = Column(Integer, nullable=False, default=0)
    activeTeamCount = Column(Integer, nullable=False, default=0)
    retentionRateBp = Column(Integer, nullable=False, default=0)
    supportActionsCount = Column(Integer, nullable=False, default=0)
    subscriptionStatus = Column(String(20), nullable=True)

    __table_args__ = (
        UniqueConstraint('memberID', 'periodID', name='uq_qualification_member_period'),
    )

    def __repr__(self):
        return (
            f"<QualificationSnapshot(memberID={self.memberID}, periodID={self.periodID}, "
            f"{self.rankKey}={self.status}, {self.nextRankKey}={self.nextRankStatus})>"
        )
