# models/support_action.py
"""
SupportAction - append-only log of sponsor support work.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from models.base import Base, _get_current_time

SUPPORT_ACTION_TYPES = (
    "onboarding_complete",
    "check_in",
    "training_attended",
    "module_completed",
    "activation_help",
    "call_logged",
    "message_sent",
    "other",
)


class SupportAction(Base):
    __tablename__ = 'support_actions'

    actionID = Column(Integer, primary_key=True, autoincrement=True)

    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False)
    recruitID = Column(Integer, ForeignKey('members.memberID'), nullable=True)

    actionType = Column(String(50), nullable=False)
    notes = Column(String, nullable=True)

    createdAt = Column(DateTime, nullable=False, default=_get_current_time)

    __table_args__ = (
        Index('ix_support_actions_member_created', 'memberID', 'createdAt'),
    )

    def __repr__(self):
        return f"<SupportAction(memberID={self.memberID}, type={self.actionType})>"
