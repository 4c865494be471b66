# rankcycle/mlm_system/__init__.py
"""
Rank-based income engine: referral, level, re-topup and global cycle incomes.
"""

# Services
from mlm_system.services.income_engine import IncomeEngine
from mlm_system.services.global_cycle_service import GlobalCycleManager
from mlm_system.services.activation_service import ActivationService

# Store
from mlm_system.store.ledger_store import LedgerStore

# Configuration
from mlm_system.config.ranks import RANK_CONFIG, get_rank, get_next_rank

# Utilities
from mlm_system.utils.time_machine import timeMachine

# Events
from mlm_system.events.event_bus import eventBus, MLMEvents

__all__ = [
    # Services
    'IncomeEngine',
    'GlobalCycleManager',
    'ActivationService',

    # Store
    'LedgerStore',

    # Config
    'RANK_CONFIG',
    'get_rank',
    'get_next_rank',

    # Utils
    'timeMachine',

    # Events
    'eventBus',
    'MLMEvents',
]
