# models/member_aggregate.py
"""
Running team counters per member.
Maintained incrementally by AggregationService, rebuildable from the tree.
"""
from sqlalchemy import Column, Integer, ForeignKey
from models.base import Base, AuditMixin


class MemberAggregate(Base, AuditMixin):
    __tablename__ = 'member_aggregates'

    memberID = Column(Integer, ForeignKey('members.memberID'), primary_key=True)

    teamSize = Column(Integer, nullable=False, default=0)  # all descendants
    activeTeamCount = Column(Integer, nullable=False, default=0)  # active descendants
    activeRecruitsCount = Column(Integer, nullable=False, default=0)  # active children only

    def __repr__(self):
        return (
            f"<MemberAggregate(memberID={self.memberID}, team={self.teamSize}, "
            f"active={self.activeTeamCount}, recruits={self.activeRecruitsCount})>"
        )
