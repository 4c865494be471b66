# rankcycle/models/mlm/reid.py
"""
ReID model - re-entry identity created when a cycle completes at the highest rank.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, Boolean, ForeignKey

from models.base import Base, AuditMixin


class ReID(Base, AuditMixin):
    __tablename__ = 'reids'

    reidID = Column(Integer, primary_key=True, autoincrement=True)

    originalUserID = Column(String(64), ForeignKey('users.userID'), nullable=False, index=True)
    rank = Column(String, nullable=False)
    sourceCycleID = Column(Integer, nullable=True)

    isActive = Column(Boolean, default=True)
    cycleCount = Column(Integer, default=1)
    totalEarnings = Column(DECIMAL(14, 2), default=0)

    def __repr__(self):
        return f"<ReID(reidID={self.reidID}, user={self.originalUserID}, rank={self.rank})>"
