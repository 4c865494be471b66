# rankcycle/models/user.py
"""
User model - member of the sponsor tree.
"""
import uuid

from sqlalchemy import Column, Integer, String, DECIMAL, Boolean, DateTime

from models.base import Base, AuditMixin


def _new_user_id() -> str:
    return uuid.uuid4().hex


class User(Base, AuditMixin):
    __tablename__ = 'users'

    # Primary identification
    userID = Column(String(64), primary_key=True, default=_new_user_id)
    sponsorID = Column(String(64), nullable=True, index=True)  # None only for the root account

    # Personal information
    email = Column(String, nullable=True)
    firstname = Column(String, nullable=True)
    surname = Column(String, nullable=True)

    # Balances
    availableBalance = Column(DECIMAL(14, 2), default=0, nullable=False)
    totalEarnings = Column(DECIMAL(14, 2), default=0, nullable=False)  # only grows

    # MLM
    currentRank = Column(String, nullable=True, index=True)  # azurite, pearl, ruby, ...
    isActive = Column(Boolean, default=False, index=True)
    activatedAt = Column(DateTime, nullable=True)
    directReferrals = Column(Integer, default=0)
    teamSize = Column(Integer, default=0)

    # Note: createdAt, updatedAt - от AuditMixin

    def __repr__(self):
        return f"<User(userID={self.userID}, sponsor={self.sponsorID}, rank={self.currentRank})>"
