# rankcycle/mlm_system/store/ledger_store.py
"""
Ledger & balance store - every write the income engine performs goes through here.

Each public write commits on its own. creditIncome() commits the income record,
the balance credit and the income transaction together, so an income event is
either fully visible or not at all.
"""
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Any
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import User, Income, IncomeTransaction, Transaction, GlobalCycle, ReID, IncomeRun
from mlm_system.exceptions import UserNotFoundError
from mlm_system.utils.chain_walker import ChainWalker
from mlm_system.utils.money import safe_add, safe_subtract, round_to_two_decimals, ZERO
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


def make_dedup_key(sourceTransactionId: str, incomeType: str, userId: str, level: Optional[int]) -> str:
    return f"{sourceTransactionId}:{incomeType}:{userId}:{level or 0}"


class LedgerStore:
    """SQLAlchemy-backed ledger store."""

    def __init__(self, session: Session):
        self.session = session
        self.walker = ChainWalker(session)

    def _commit(self):
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def _lockUser(self, userId: str) -> User:
        user = self.session.query(User).filter_by(
            userID=userId
        ).with_for_update().first()

        if not user:
            raise UserNotFoundError(userId)
        return user

    @staticmethod
    def _applyBalance(user: User, amount: Decimal, operation: str):
        if operation == "add":
            user.availableBalance = safe_add(user.availableBalance or ZERO, amount)
            user.totalEarnings = safe_add(user.totalEarnings or ZERO, amount)
        elif operation == "subtract":
            newBalance = safe_subtract(user.availableBalance or ZERO, amount)
            user.availableBalance = newBalance if newBalance > 0 else ZERO
        else:
            raise ValueError(f"Unknown balance operation '{operation}'")

        user.updatedAt = timeMachine.now

    # ═══════════════════════════════════════════════════════════════════════
    # USERS
    # ═══════════════════════════════════════════════════════════════════════

    async def getUser(self, userId: str, required: bool = False) -> Optional[User]:
        user = self.session.query(User).filter_by(userID=userId).first()
        if not user and required:
            raise UserNotFoundError(userId)
        return user

    async def createUser(self, userId: Optional[str] = None, sponsorId: Optional[str] = None, **fields) -> User:
        """
        Create user under sponsor.
        A new user has no downline, so any existing sponsor keeps the chain acyclic.
        """
        if sponsorId is not None and not await self.getUser(sponsorId):
            raise UserNotFoundError(sponsorId)

        user = User(sponsorID=sponsorId, **fields)
        if userId:
            user.userID = userId

        self.session.add(user)
        self._commit()

        logger.debug(f"Created user {user.userID} under sponsor {sponsorId}")
        return user

    async def updateUser(self, userId: str, **patch) -> User:
        user = await self.getUser(userId, required=True)

        for field, value in patch.items():
            setattr(user, field, value)
        user.updatedAt = timeMachine.now

        self._commit()
        return user

    async def updateBalance(self, userId: str, amount: Decimal, operation: str = "add") -> User:
        """
        Atomic read-modify-write of availableBalance/totalEarnings.

        add: balance and totalEarnings grow by amount
        subtract: balance shrinks, floored at 0; totalEarnings unchanged

        Raises:
            UserNotFoundError: If user does not exist
        """
        try:
            user = self._lockUser(userId)
            self._applyBalance(user, round_to_two_decimals(amount), operation)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.debug(f"Balance {operation} {amount} for user {userId}: now {user.availableBalance}")
        return user

    async def incrementTeamCounters(self, userId: str) -> int:
        """
        First activation of userId: sponsor gets +1 direct referral,
        every upline member gets +1 team size.
        """
        user = await self.getUser(userId, required=True)
        chain = self.walker.get_upline_chain(user)

        for level, upline in enumerate(chain, start=1):
            if level == 1:
                upline.directReferrals = (upline.directReferrals or 0) + 1
            upline.teamSize = (upline.teamSize or 0) + 1

        self._commit()
        return len(chain)

    async def getUplineIds(self, userId: str, levels: int) -> List[str]:
        return self.walker.get_upline_ids(userId, levels)

    # ═══════════════════════════════════════════════════════════════════════
    # INCOMES
    # ═══════════════════════════════════════════════════════════════════════

    def _buildIncome(self, data: Dict[str, Any]) -> Income:
        return Income(
            userID=data["userId"],
            incomeType=data["incomeType"],
            amount=round_to_two_decimals(data["amount"]),
            sourceUserID=data.get("sourceUserId"),
            sourceTransactionID=data["sourceTransactionId"],
            level=data.get("level"),
            rank=data["rank"],
            status="pending",
            processedAt=None,
            details=data.get("details") or {},
            dedupKey=make_dedup_key(
                data["sourceTransactionId"], data["incomeType"], data["userId"], data.get("level")
            ),
        )

    async def createIncomeRecord(self, data: Dict[str, Any]) -> Income:
        income = self._buildIncome(data)
        self.session.add(income)
        self._commit()
        return income

    async def createIncomeTransaction(self, data: Dict[str, Any]) -> IncomeTransaction:
        entry = IncomeTransaction(
            userID=data["userId"],
            incomeID=data["incomeId"],
            entryType="income",
            subType=data["subType"],
            amount=round_to_two_decimals(data["amount"]),
            status="completed",
            description=data.get("description"),
        )
        self.session.add(entry)
        self._commit()
        return entry

    async def creditIncome(self, data: Dict[str, Any], description: str) -> Optional[Income]:
        """
        Create income record + credit balance + create income transaction
        in one database transaction.

        Returns:
            Created Income, or None if this income event was already credited

        Raises:
            UserNotFoundError: If the recipient does not exist
        """
        dedupKey = make_dedup_key(
            data["sourceTransactionId"], data["incomeType"], data["userId"], data.get("level")
        )

        existing = self.session.query(Income).filter_by(dedupKey=dedupKey).first()
        if existing:
            logger.warning(f"Income {dedupKey} already credited (incomeID={existing.incomeID}), skipping")
            return None

        try:
            user = self._lockUser(data["userId"])

            income = self._buildIncome(data)
            self.session.add(income)
            self.session.flush()

            self._applyBalance(user, income.amount, "add")

            self.session.add(IncomeTransaction(
                userID=income.userID,
                incomeID=income.incomeID,
                entryType="income",
                subType=income.incomeType,
                amount=income.amount,
                status="completed",
                description=description,
            ))

            self.session.commit()

        except IntegrityError:
            self.session.rollback()
            logger.warning(f"Income {dedupKey} credited concurrently, skipping")
            return None
        except Exception:
            self.session.rollback()
            raise

        return income

    async def listIncomes(
            self,
            userId: Optional[str] = None,
            transactionId: Optional[str] = None,
            incomeType: Optional[str] = None
    ) -> List[Income]:
        query = self.session.query(Income)
        if userId:
            query = query.filter(Income.userID == userId)
        if transactionId:
            query = query.filter(Income.sourceTransactionID == transactionId)
        if incomeType:
            query = query.filter(Income.incomeType == incomeType)
        return query.order_by(Income.incomeID).all()

    # ═══════════════════════════════════════════════════════════════════════
    # GLOBAL CYCLES
    # ═══════════════════════════════════════════════════════════════════════

    async def getCycle(self, cycleId: int) -> Optional[GlobalCycle]:
        return self.session.query(GlobalCycle).filter_by(cycleID=cycleId).first()

    async def queryActiveCycle(self, rank: str) -> Optional[GlobalCycle]:
        """Oldest incomplete cycle of rank."""
        return self.session.query(GlobalCycle).filter(
            GlobalCycle.rank == rank,
            GlobalCycle.isComplete == False  # noqa: E712
        ).order_by(
            GlobalCycle.createdAt.asc(),
            GlobalCycle.cycleID.asc()
        ).first()

    async def createCycle(self, rank: str, firstParticipant: str) -> GlobalCycle:
        cycle = GlobalCycle(
            rank=rank,
            participants=[firstParticipant],
            totalAmount=ZERO,
            isComplete=False,
            completedAt=None,
            payoutProcessed=False,
        )
        self.session.add(cycle)
        self._commit()

        logger.info(f"Created global cycle {cycle.cycleID} for rank {rank}")
        return cycle

    async def appendParticipant(
            self,
            cycleId: int,
            userId: str,
            capacity: Optional[int] = None
    ) -> Optional[Tuple[int, bool]]:
        """
        Append userId to an open cycle under a row lock.

        Returns:
            (position, added) - added is False when userId was already queued
            None - cycle is complete or full, caller must pick another cycle
        """
        try:
            cycle = self.session.query(GlobalCycle).filter_by(
                cycleID=cycleId
            ).with_for_update().first()

            if not cycle or cycle.isComplete:
                self.session.rollback()
                return None

            participants = list(cycle.participants or [])

            if userId in participants:
                self.session.rollback()
                return participants.index(userId) + 1, False

            if capacity is not None and len(participants) >= capacity:
                self.session.rollback()
                return None

            # New list object so the JSON column is flagged dirty
            cycle.participants = participants + [userId]
            cycle.updatedAt = timeMachine.now
            self.session.commit()

        except Exception:
            self.session.rollback()
            raise

        return len(participants) + 1, True

    async def markCycleComplete(self, cycleId: int) -> bool:
        """
        Flip isComplete once.

        Returns:
            True only for the caller that completed the cycle
        """
        now = timeMachine.now
        updated = self.session.query(GlobalCycle).filter(
            GlobalCycle.cycleID == cycleId,
            GlobalCycle.isComplete == False  # noqa: E712
        ).update(
            {"isComplete": True, "completedAt": now, "updatedAt": now},
            synchronize_session=False
        )
        self._commit()
        return updated == 1

    async def claimCyclePayout(self, cycleId: int) -> bool:
        """Set payoutProcessed on a complete cycle; True only for the first caller."""
        now = timeMachine.now
        updated = self.session.query(GlobalCycle).filter(
            GlobalCycle.cycleID == cycleId,
            GlobalCycle.isComplete == True,  # noqa: E712
            GlobalCycle.payoutProcessed == False  # noqa: E712
        ).update(
            {"payoutProcessed": True, "payoutProcessedAt": now, "updatedAt": now},
            synchronize_session=False
        )
        self._commit()
        return updated == 1

    async def releaseCyclePayout(self, cycleId: int) -> None:
        """Undo claimCyclePayout so the payout sweep retries the cycle."""
        self.session.query(GlobalCycle).filter(
            GlobalCycle.cycleID == cycleId
        ).update(
            {"payoutProcessed": False, "payoutProcessedAt": None},
            synchronize_session=False
        )
        self._commit()

    async def addCycleAmount(self, cycleId: int, amount: Decimal) -> None:
        cycle = self.session.query(GlobalCycle).filter_by(
            cycleID=cycleId
        ).with_for_update().first()
        cycle.totalAmount = safe_add(cycle.totalAmount or ZERO, amount)
        self._commit()

    async def listUnpaidCompletedCycles(self, limit: int = 10) -> List[GlobalCycle]:
        return self.session.query(GlobalCycle).filter(
            GlobalCycle.isComplete == True,  # noqa: E712
            GlobalCycle.payoutProcessed == False  # noqa: E712
        ).order_by(
            GlobalCycle.completedAt.asc(),
            GlobalCycle.cycleID.asc()
        ).limit(limit).all()

    # ═══════════════════════════════════════════════════════════════════════
    # TRANSACTIONS, RE-IDS
    # ═══════════════════════════════════════════════════════════════════════

    async def createTransaction(self, data: Dict[str, Any]) -> Transaction:
        transaction = Transaction(
            userID=data["userId"],
            transactionType=data["transactionType"],
            amount=round_to_two_decimals(data["amount"]),
            rank=data["rank"],
            status=data.get("status", "completed"),
            incomeStatus="pending",
            details=data.get("details") or {},
        )
        if data.get("transactionId"):
            transaction.transactionID = data["transactionId"]

        self.session.add(transaction)
        self._commit()
        return transaction

    async def getTransaction(self, transactionId: str) -> Optional[Transaction]:
        return self.session.query(Transaction).filter_by(transactionID=transactionId).first()

    async def markTransactionProcessed(
            self,
            transactionId: str,
            success: bool = True,
            error: Optional[str] = None
    ) -> None:
        transaction = await self.getTransaction(transactionId)
        if not transaction:
            logger.error(f"Transaction {transactionId} not found, cannot mark processed")
            return

        transaction.incomeStatus = "processed" if success else "failed"
        transaction.incomeProcessedAt = timeMachine.now if success else None
        transaction.incomeError = error
        self._commit()

    async def listPendingTransactions(self, limit: int = 10, olderThan=None) -> List[Transaction]:
        """Transactions whose incomes were never processed."""
        query = self.session.query(Transaction).filter(Transaction.incomeStatus == "pending")
        if olderThan is not None:
            query = query.filter(Transaction.createdAt <= olderThan)
        return query.order_by(Transaction.createdAt.asc()).limit(limit).all()

    async def createReid(self, userId: str, rank: str, sourceCycleId: Optional[int] = None) -> ReID:
        reid = ReID(
            originalUserID=userId,
            rank=rank,
            sourceCycleID=sourceCycleId,
            isActive=True,
            cycleCount=1,
            totalEarnings=ZERO,
        )
        self.session.add(reid)
        self._commit()
        return reid

    # ═══════════════════════════════════════════════════════════════════════
    # INCOME RUNS (processed-transactions set)
    # ═══════════════════════════════════════════════════════════════════════

    async def beginIncomeRun(
            self,
            transactionId: str,
            userId: str,
            rank: str,
            amount: Decimal,
            isReTopup: bool = False
    ) -> bool:
        """
        Claim transactionId for processing.

        Returns:
            False if the transaction is being processed or was processed already.
            A failed run is claimed again.
        """
        run = self.session.query(IncomeRun).filter_by(transactionID=transactionId).first()

        if run:
            if run.status != "failed":
                return False

            run.status = "processing"
            run.attempts = (run.attempts or 1) + 1
            run.error = None
            self._commit()
            logger.info(f"Retrying income run for transaction {transactionId} (attempt {run.attempts})")
            return True

        self.session.add(IncomeRun(
            transactionID=transactionId,
            userID=userId,
            rank=rank,
            amount=round_to_two_decimals(amount),
            isReTopup=isReTopup,
            status="processing",
            attempts=1,
        ))

        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return False

        return True

    async def finishIncomeRun(self, transactionId: str) -> None:
        run = self.session.query(IncomeRun).filter_by(transactionID=transactionId).first()
        run.status = "done"
        run.finishedAt = timeMachine.now
        self._commit()

    async def failIncomeRun(self, transactionId: str, error: str) -> None:
        run = self.session.query(IncomeRun).filter_by(transactionID=transactionId).first()
        if not run:
            return
        run.status = "failed"
        run.error = error
        run.finishedAt = timeMachine.now
        self._commit()

    async def getIncomeRun(self, transactionId: str) -> Optional[IncomeRun]:
        return self.session.query(IncomeRun).filter_by(transactionID=transactionId).first()

    async def failStaleIncomeRun(self, transactionId: str, olderThan, error: str) -> bool:
        """
        Mark a run failed if it is still processing and untouched since olderThan.

        Returns:
            True if the run was marked failed
        """
        now = timeMachine.now
        updated = self.session.query(IncomeRun).filter(
            IncomeRun.transactionID == transactionId,
            IncomeRun.status == "processing",
            IncomeRun.updatedAt <= olderThan
        ).update(
            {"status": "failed", "error": error, "finishedAt": now, "updatedAt": now},
            synchronize_session=False
        )
        self._commit()
        return updated == 1

    async def recordRunPlacement(self, transactionId: str, cycleId: int, position: int) -> None:
        """Remember the cycle slot taken by a run so a retry does not queue again."""
        run = self.session.query(IncomeRun).filter_by(transactionID=transactionId).first()
        if not run:
            return
        run.cycleID = cycleId
        run.cyclePosition = position
        self._commit()
