# matrix_system/__init__.py
"""
Matrix System - rank qualification, aggregation and commission ledger.
"""

# Services
from matrix_system.services.tree_service import TreeService
from matrix_system.services.aggregation_service import AggregationService
from matrix_system.services.support_service import SupportService
from matrix_system.services.qualification_service import QualificationService
from matrix_system.services.rank_service import RankService
from matrix_system.services.commission_service import CommissionService
from matrix_system.services.period_service import PeriodService
from matrix_system.services.dashboard_service import DashboardService

# Configuration
from matrix_system.config.ranks import RankDefinition, RankLadder, get_rank_ladder

# Utilities
from matrix_system.utils.time_machine import timeMachine

# Events
from matrix_system.events.event_bus import eventBus, MatrixEvents

__all__ = [
    # Services
    'TreeService',
    'AggregationService',
    'SupportService',
    'QualificationService',
    'RankService',
    'CommissionService',
    'PeriodService',
    'DashboardService',

    # Config
    'RankDefinition',
    'RankLadder',
    'get_rank_ladder',

    # Utils
    'timeMachine',

    # Events
    'eventBus',
    'MatrixEvents',
]
