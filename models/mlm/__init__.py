"""
MLM models: global cycles, re-entry ids, income runs.
"""
from models.mlm.global_cycle import GlobalCycle
from models.mlm.reid import ReID
from models.mlm.income_run import IncomeRun

__all__ = ['GlobalCycle', 'ReID', 'IncomeRun']
