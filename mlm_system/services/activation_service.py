# rankcycle/mlm_system/services/activation_service.py
"""
Activation workflow - records the activation transaction, updates the user
and hands the transaction to the income engine.
"""
from datetime import timedelta
from typing import Dict, Optional, Any
import logging

from sqlalchemy.orm import Session

from mlm_system.config.ranks import get_rank
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.exceptions import IncomeEngineError, InvalidActivationError
from mlm_system.services.income_engine import IncomeEngine
from mlm_system.store.ledger_store import LedgerStore
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = ("activation", "topup", "auto_topup")
RETOPUP_TYPES = ("topup", "auto_topup")

# A run still processing after this long is treated as crashed
STALE_RUN_TIMEOUT = timedelta(minutes=30)


class ActivationService:
    """Service for user activations."""

    def __init__(self, session: Session, engine: Optional[IncomeEngine] = None):
        self.session = session
        self.store = LedgerStore(session)
        self.engine = engine or IncomeEngine(self.store)

    async def activate(
            self,
            userId: str,
            rank: str,
            amount=None,
            transactionType: str = "activation",
            processIncome: bool = True
    ) -> Dict[str, Any]:
        """
        Activate user at rank.

        Args:
            userId: User to activate
            rank: Rank to activate
            amount: Paid amount, defaults to the rank's activation amount
            transactionType: activation, topup or auto_topup
            processIncome: False leaves income processing to the
                ACTIVATION_COMPLETED listener

        Returns:
            Income summary, or {"success": True, "deferred": True, ...}
        """
        if transactionType not in TRANSACTION_TYPES:
            raise InvalidActivationError(f"Unknown transaction type '{transactionType}'")

        rankConfig = get_rank(rank)
        user = await self.store.getUser(userId, required=True)

        if amount is None:
            amount = rankConfig["activationAmount"]

        firstActivation = not user.isActive

        transaction = await self.store.createTransaction({
            "userId": userId,
            "transactionType": transactionType,
            "amount": amount,
            "rank": rank,
            "status": "completed",
            "details": {"previousRank": user.currentRank},
        })

        patch = {"currentRank": rank, "isActive": True}
        if firstActivation:
            patch["activatedAt"] = timeMachine.now
        await self.store.updateUser(userId, **patch)

        if firstActivation and user.sponsorID:
            await self.store.incrementTeamCounters(userId)

        logger.info(
            f"User {userId} {transactionType} at {rank} for {amount}, "
            f"transaction {transaction.transactionID}"
        )

        if not processIncome:
            await eventBus.emit(MLMEvents.ACTIVATION_COMPLETED, {
                "transactionId": transaction.transactionID,
                "userId": userId,
                "rank": rank,
            })
            return {
                "success": True,
                "deferred": True,
                "transactionId": transaction.transactionID
            }

        return await self.processTransaction(transaction.transactionID)

    async def processTransaction(self, transactionId: str) -> Dict[str, Any]:
        """
        Run income processing for a stored transaction.

        Raises:
            IncomeEngineError: If the transaction does not exist
        """
        transaction = await self.store.getTransaction(transactionId)

        if not transaction:
            raise IncomeEngineError(f"Transaction {transactionId} not found")

        if transaction.incomeStatus == "processed":
            logger.warning(f"Transaction {transactionId} incomes already processed")
            return {
                "success": False,
                "duplicate": True,
                "transactionId": transactionId,
                "error": "Already processed"
            }

        try:
            result = await self.engine.processAllIncomes(
                transaction.userID,
                transaction.amount,
                transaction.transactionID,
                transaction.rank,
                isReTopup=transaction.transactionType in RETOPUP_TYPES
            )
        except Exception as e:
            await self.store.markTransactionProcessed(transactionId, success=False, error=str(e))
            raise

        if result.get("success"):
            await self.store.markTransactionProcessed(transactionId)
        elif result.get("duplicate"):
            await self._reconcileDuplicate(transactionId)

        return result

    async def _reconcileDuplicate(self, transactionId: str) -> None:
        """Settle a pending transaction whose income run already exists."""
        incomeRun = await self.store.getIncomeRun(transactionId)
        if incomeRun is None:
            return

        if incomeRun.status == "done":
            logger.info(f"Transaction {transactionId} incomes were processed, marking transaction")
            await self.store.markTransactionProcessed(transactionId)
            return

        error = f"Income run stuck in processing for over {STALE_RUN_TIMEOUT}"
        if await self.store.failStaleIncomeRun(transactionId, timeMachine.now - STALE_RUN_TIMEOUT, error):
            logger.warning(f"Transaction {transactionId}: {error}, marked failed")
            await self.store.markTransactionProcessed(transactionId, success=False, error=error)
