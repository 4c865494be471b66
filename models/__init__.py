"""
Database models for Rankcycle.
Import all models here for easy access.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Core models
from models.user import User
from models.transaction import Transaction
from models.income import Income, IncomeTransaction

# MLM models
from models.mlm.global_cycle import GlobalCycle
from models.mlm.reid import ReID
from models.mlm.income_run import IncomeRun

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Core
    'User',
    'Transaction',
    'Income',
    'IncomeTransaction',

    # MLM
    'GlobalCycle',
    'ReID',
    'IncomeRun',
]
