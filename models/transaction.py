# rankcycle/models/transaction.py
"""
Transaction model - activations, top-ups and automatic top-ups.
"""
import uuid

from sqlalchemy import Column, String, DECIMAL, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship

from models.base import Base, AuditMixin


def _new_transaction_id() -> str:
    return uuid.uuid4().hex


class Transaction(Base, AuditMixin):
    __tablename__ = 'transactions'

    # Primary key
    transactionID = Column(String(64), primary_key=True, default=_new_transaction_id)

    # Relations
    userID = Column(String(64), ForeignKey('users.userID'), nullable=False, index=True)

    # Transaction details
    transactionType = Column(String, nullable=False)  # activation, topup, auto_topup
    amount = Column(DECIMAL(14, 2), nullable=False)
    rank = Column(String, nullable=False)
    status = Column(String, default="completed")  # pending, completed, failed

    # Income processing
    incomeStatus = Column(String, default="pending")  # pending, processed, failed
    incomeProcessedAt = Column(DateTime, nullable=True)
    incomeError = Column(String, nullable=True)

    details = Column('metadata', JSON, nullable=True)  # {"autoGenerated": true, "previousRank": ...}

    # Note: createdAt, updatedAt - от AuditMixin

    # Relationships
    user = relationship('User', backref='transactions')

    def __repr__(self):
        return f"<Transaction(transactionID={self.transactionID}, type={self.transactionType}, amount={self.amount})>"
