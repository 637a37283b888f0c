# models/member.py
"""
Member model - a node of the recruitment tree.
Structural fields are owned by TreeService, rankKey by RankService.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin, _get_current_time

SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_PAST_DUE = "past_due"
SUBSCRIPTION_CANCELED = "canceled"

SUBSCRIPTION_STATUSES = (
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_PAST_DUE,
    SUBSCRIPTION_CANCELED,
)


class Member(Base, AuditMixin):
    __tablename__ = 'members'

    # Primary key
    memberID = Column(Integer, primary_key=True, autoincrement=True)

    # Tree structure (immutable after creation)
    parentID = Column(Integer, ForeignKey('members.memberID'), nullable=True, index=True)
    depth = Column(Integer, nullable=False, default=0)

    # Rank ladder position
    rankKey = Column(String(50), nullable=False)

    joinedAt = Column(DateTime, nullable=False, default=_get_current_time, index=True)
    subscriptionStatus = Column(String(20), nullable=False, default=SUBSCRIPTION_ACTIVE)

    # Relationships
    parent = relationship('Member', remote_side=[memberID], backref='children')

    __table_args__ = (
        Index('ix_members_parent_status', 'parentID', 'subscriptionStatus'),
    )

    @property
    def isActive(self) -> bool:
        return self.subscriptionStatus == SUBSCRIPTION_ACTIVE

    def __repr__(self):
        return (
            f"<Member(memberID={self.memberID}, parentID={self.parentID}, "
            f"depth={self.depth}, rank={self.rankKey})>"
        )
