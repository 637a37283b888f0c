"""
Database models for the Matrix engine.
Import all models here for easy access and table registration.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Tree
from models.member import Member
from models.member_aggregate import MemberAggregate

# Periodic evaluation
from models.period import Period
from models.aggregate_snapshot import AggregateSnapshot
from models.support_action import SupportAction
from models.qualification_snapshot import QualificationSnapshot
from models.rank_history import RankHistory

# Ledger
from models.earning_entry import EarningEntry

# Event intake
from models.processed_event import ProcessedEvent

# Event listeners
from models.listeners import register_all_listeners

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Tree
    'Member',
    'MemberAggregate',

    # Periods
    'Period',
    'AggregateSnapshot',
    'SupportAction',
    'QualificationSnapshot',
    'RankHistory',

    # Ledger
    'EarningEntry',

    # Events
    'ProcessedEvent',

    # Listeners
    'register_all_listeners',
]
