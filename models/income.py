# rankcycle/models/income.py
"""
Income model - append-only ledger of referral, level, global and re-topup incomes.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship

from models.base import Base, AuditMixin


class Income(Base, AuditMixin):
    __tablename__ = 'incomes'

    # Primary key
    incomeID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations
    userID = Column(String(64), ForeignKey('users.userID'), nullable=False, index=True)  # recipient
    sourceUserID = Column(String(64), nullable=True)  # activator (None for global payouts)
    sourceTransactionID = Column(String(64), nullable=False, index=True)  # activation tx or "cycle:<id>"

    # Income details
    incomeType = Column(String, nullable=False)  # referral, level, global, retopup
    amount = Column(DECIMAL(14, 2), nullable=False)
    level = Column(Integer, nullable=True)  # level/global only
    rank = Column(String, nullable=False)

    # Status
    status = Column(String, default="pending")  # pending, processed
    processedAt = Column(DateTime, nullable=True)

    # "<sourceTransactionID>:<incomeType>:<userID>:<level>" - one credit per income event
    dedupKey = Column(String, nullable=False, unique=True)

    # percentages used, activation amount, cycle id
    details = Column('metadata', JSON, nullable=True)

    # Note: createdAt, updatedAt - от AuditMixin

    # Relationships
    user = relationship('User', backref='incomes')

    def __repr__(self):
        return f"<Income(incomeID={self.incomeID}, user={self.userID}, type={self.incomeType}, amount={self.amount})>"


class IncomeTransaction(Base, AuditMixin):
    __tablename__ = 'income_transactions'

    entryID = Column(Integer, primary_key=True, autoincrement=True)

    userID = Column(String(64), ForeignKey('users.userID'), nullable=False, index=True)
    incomeID = Column(Integer, ForeignKey('incomes.incomeID'), nullable=False)

    entryType = Column(String, default="income")
    subType = Column(String, nullable=False)  # mirrors Income.incomeType
    amount = Column(DECIMAL(14, 2), nullable=False)
    status = Column(String, default="completed")
    description = Column(String, nullable=True)

    income = relationship('Income', backref='ledgerEntries')

    def __repr__(self):
        return f"<IncomeTransaction(entryID={self.entryID}, user={self.userID}, amount={self.amount})>"
