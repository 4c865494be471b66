# rankcycle/models/mlm/global_cycle.py
"""
GlobalCycle model - rank-scoped queue of participants for the global payout.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Boolean, JSON

from models.base import Base, AuditMixin


class GlobalCycle(Base, AuditMixin):
    __tablename__ = 'global_cycles'

    cycleID = Column(Integer, primary_key=True, autoincrement=True)

    rank = Column(String, nullable=False, index=True)

    # Ordered list of userIDs, insertion order defines the binary-tree position
    participants = Column(JSON, nullable=False, default=list)

    totalAmount = Column(DECIMAL(14, 2), default=0)  # paid out so far

    # Status
    isComplete = Column(Boolean, default=False, index=True)
    completedAt = Column(DateTime, nullable=True)
    payoutProcessed = Column(Boolean, default=False, index=True)
    payoutProcessedAt = Column(DateTime, nullable=True)

    @property
    def participantCount(self) -> int:
        return len(self.participants or [])

    def __repr__(self):
        return (
            f"<GlobalCycle(cycleID={self.cycleID}, rank={self.rank}, "
            f"participants={self.participantCount}, complete={self.isComplete})>"
        )
