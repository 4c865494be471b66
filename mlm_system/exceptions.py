# rankcycle/mlm_system/exceptions.py
"""
Exceptions raised by the income engine and the ledger store.
Store I/O failures surface as sqlalchemy.exc.SQLAlchemyError and are not wrapped.
"""


class IncomeEngineError(Exception):
    """Base class for income engine errors."""
    pass


class UserNotFoundError(IncomeEngineError):
    """Referenced user or sponsor does not exist."""

    def __init__(self, userId: str):
        self.userId = userId
        super().__init__(f"User {userId} not found")


class UnknownRankError(IncomeEngineError):
    """Rank is not present in the rank table."""

    def __init__(self, rank: str):
        self.rank = rank
        super().__init__(f"Unknown rank '{rank}'")


class InvalidActivationError(IncomeEngineError):
    """Inbound activation call violates the call contract."""
    pass


class CascadeDepthError(IncomeEngineError):
    """Auto top-up cascade went deeper than the rank table allows."""
    pass
