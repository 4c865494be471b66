# rankcycle/models/mlm/income_run.py
"""
IncomeRun model - processed-transactions set.
One row per transaction id handed to the income engine.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Boolean, Text

from models.base import Base, AuditMixin


class IncomeRun(Base, AuditMixin):
    __tablename__ = 'income_runs'

    runID = Column(Integer, primary_key=True, autoincrement=True)

    transactionID = Column(String(64), nullable=False, unique=True)
    userID = Column(String(64), nullable=False)
    rank = Column(String, nullable=False)
    amount = Column(DECIMAL(14, 2), nullable=False)
    isReTopup = Column(Boolean, default=False)

    status = Column(String, default="processing")  # processing, done, failed
    attempts = Column(Integer, default=1)
    finishedAt = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)

    # Global cycle placement made by this run, reused on retry
    cycleID = Column(Integer, nullable=True)
    cyclePosition = Column(Integer, nullable=True)

    def __repr__(self):
        return f"<IncomeRun(transactionID={self.transactionID}, status={self.status})>"
