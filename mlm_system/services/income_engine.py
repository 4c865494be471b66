# rankcycle/mlm_system/services/income_engine.py
"""
Income distribution engine - referral, re-topup, level and global incomes
for one activation transaction.
"""
from decimal import Decimal, InvalidOperation
from typing import List, Dict, Optional, Any
import logging

from sqlalchemy.exc import SQLAlchemyError

from config import Config
from mlm_system.config.ranks import get_rank, get_rank_order, has_benefit
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.exceptions import InvalidActivationError, CascadeDepthError, UserNotFoundError
from mlm_system.store.ledger_store import LedgerStore
from mlm_system.utils.money import (
    calculate_referral_income,
    calculate_retopup_income,
    calculate_level_income,
    get_referral_percentage,
    get_level_percentage,
    validate_amount_precision,
    to_decimal,
    safe_add,
    ZERO,
)

logger = logging.getLogger(__name__)


class IncomeEngine:
    """
    Distributes incomes for activations.

    Steps of processAllIncomes run sequentially. A failing step aborts the
    rest and propagates; incomes credited by earlier steps stay credited.
    """

    def __init__(self, store: LedgerStore, cycleManager=None):
        self.store = store

        if cycleManager is None:
            from mlm_system.services.global_cycle_service import GlobalCycleManager
            cycleManager = GlobalCycleManager(store, engine=self)
        self.cycleManager = cycleManager

    async def processAllIncomes(
            self,
            activatorId: str,
            activationAmount,
            transactionId: str,
            rank: str,
            isReTopup: bool = False,
            _depth: int = 0
    ) -> Dict[str, Any]:
        """
        Process all incomes for an activation.

        Args:
            activatorId: User who activated
            activationAmount: Paid amount, at most 2 decimal places
            transactionId: Activation transaction, processed at most once
            rank: Rank activated
            isReTopup: Pay re-topup income instead of referral income
            _depth: Auto top-up cascade depth

        Returns:
            Summary dict; {"success": False, "duplicate": True} when
            transactionId was already processed

        Raises:
            InvalidActivationError, UnknownRankError, UserNotFoundError,
            CascadeDepthError, SQLAlchemyError
        """
        maxDepth = len(get_rank_order())
        if _depth > maxDepth:
            raise CascadeDepthError(
                f"Auto top-up cascade depth {_depth} exceeds {maxDepth} ranks "
                f"(transaction {transactionId})"
            )

        amount = self._validateActivation(activatorId, activationAmount, transactionId, rank)

        activator = await self.store.getUser(activatorId)
        if not activator:
            raise UserNotFoundError(activatorId)

        claimed = await self.store.beginIncomeRun(
            transactionId, activatorId, rank, amount, isReTopup
        )
        if not claimed:
            logger.warning(f"Transaction {transactionId} already processed, skipping")
            return {
                "success": False,
                "duplicate": True,
                "transactionId": transactionId,
                "error": "Transaction already processed"
            }

        results = {
            "success": True,
            "transactionId": transactionId,
            "activatorId": activatorId,
            "rank": rank,
            "isReTopup": isReTopup,
            "incomes": [],
            "totalDistributed": ZERO,
            "cycle": None
        }

        try:
            # ═══════════════════════════════════════════════════════════
            # STEP 1: Referral / re-topup income for direct sponsor
            # ═══════════════════════════════════════════════════════════
            sponsorId = activator.sponsorID
            if sponsorId:
                if isReTopup:
                    income = await self.processReTopupIncome(
                        activatorId, sponsorId, amount, transactionId, rank
                    )
                else:
                    income = await self.processReferralIncome(
                        activatorId, sponsorId, amount, transactionId, rank
                    )
                self._collect(results, income)
            else:
                logger.debug(f"User {activatorId} has no sponsor, no referral income")

            # ═══════════════════════════════════════════════════════════
            # STEP 2: Level income for 6 upline levels
            # ═══════════════════════════════════════════════════════════
            for income in await self.processLevelIncome(activatorId, amount, transactionId, rank):
                self._collect(results, income)

            # ═══════════════════════════════════════════════════════════
            # STEP 3: Global cycle
            # ═══════════════════════════════════════════════════════════
            results["cycle"] = await self.processGlobalIncome(
                activatorId, amount, transactionId, rank, depth=_depth
            )

        except Exception as e:
            logger.error(
                f"Failed to process incomes: activator={activatorId}, amount={amount}, "
                f"transaction={transactionId}, rank={rank}, isReTopup={isReTopup}: {e}",
                exc_info=True
            )
            try:
                await self.store.failIncomeRun(transactionId, str(e))
            except SQLAlchemyError as markError:
                logger.error(f"Could not mark income run {transactionId} failed: {markError}")
            raise

        await self.store.finishIncomeRun(transactionId)

        logger.info(
            f"Processed {'re-topup' if isReTopup else 'activation'} {transactionId} "
            f"({activatorId}, {rank}, {amount}): "
            f"{len(results['incomes'])} incomes, total {results['totalDistributed']}"
        )

        return results

    def _validateActivation(self, activatorId, activationAmount, transactionId, rank) -> Decimal:
        if not isinstance(activatorId, str) or not activatorId:
            raise InvalidActivationError("activatorId must be a non-empty string")
        if not isinstance(transactionId, str) or not transactionId:
            raise InvalidActivationError("transactionId must be a non-empty string")

        # Raises UnknownRankError
        get_rank(rank)

        try:
            amount = to_decimal(activationAmount)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidActivationError(f"Invalid activation amount {activationAmount!r}")

        if not validate_amount_precision(amount):
            raise InvalidActivationError(
                f"Activation amount {activationAmount} must have at most 2 decimal places"
            )
        if amount < 0:
            raise InvalidActivationError(f"Activation amount {activationAmount} is negative")

        return amount

    @staticmethod
    def _collect(results: Dict, income: Optional[Dict]):
        if not income:
            return
        results["incomes"].append(income)
        results["totalDistributed"] = safe_add(results["totalDistributed"], income["amount"])

    async def creditIncome(
            self,
            userId: str,
            incomeType: str,
            amount: Decimal,
            sourceTransactionId: str,
            rank: str,
            sourceUserId: Optional[str] = None,
            level: Optional[int] = None,
            details: Optional[Dict] = None,
            description: str = ""
    ) -> Optional[Dict[str, Any]]:
        """
        Record, credit and log one income event.

        Returns:
            Income summary, None when the same income was credited before
        """
        income = await self.store.creditIncome({
            "userId": userId,
            "incomeType": incomeType,
            "amount": amount,
            "sourceUserId": sourceUserId,
            "sourceTransactionId": sourceTransactionId,
            "level": level,
            "rank": rank,
            "details": details,
        }, description)

        if not income:
            return None

        summary = {
            "incomeId": income.incomeID,
            "userId": userId,
            "incomeType": incomeType,
            "amount": income.amount,
            "level": level,
            "sourceUserId": sourceUserId,
            "sourceTransactionId": sourceTransactionId,
            "rank": rank,
        }

        logger.info(f"💰 {incomeType} income {income.amount} credited to {userId} (tx {sourceTransactionId})")

        await eventBus.emit(MLMEvents.INCOME_CREDITED, summary)
        return summary

    # ═══════════════════════════════════════════════════════════════════════
    # REFERRAL / RE-TOPUP
    # ═══════════════════════════════════════════════════════════════════════

    async def processReferralIncome(
            self,
            activatorId: str,
            sponsorId: str,
            activationAmount: Decimal,
            transactionId: str,
            rank: str
    ) -> Optional[Dict]:
        """Referral income for the direct sponsor, None when nothing is due."""
        incomeAmount = calculate_referral_income(activationAmount)

        if incomeAmount <= 0:
            logger.info(f"Referral income for {sponsorId} is {incomeAmount}, skipping")
            return None

        return await self.creditIncome(
            userId=sponsorId,
            incomeType="referral",
            amount=incomeAmount,
            sourceUserId=activatorId,
            sourceTransactionId=transactionId,
            rank=rank,
            details={
                "activationAmount": str(activationAmount),
                "referralPercentage": str(get_referral_percentage()),
            },
            description=f"Referral income from {activatorId}"
        )

    async def processReTopupIncome(
            self,
            activatorId: str,
            sponsorId: str,
            activationAmount: Decimal,
            transactionId: str,
            rank: str
    ) -> Optional[Dict]:
        incomeAmount = calculate_retopup_income(activationAmount)

        if incomeAmount <= 0:
            logger.info(f"Re-topup income for {sponsorId} is {incomeAmount}, skipping")
            return None

        return await self.creditIncome(
            userId=sponsorId,
            incomeType="retopup",
            amount=incomeAmount,
            sourceUserId=activatorId,
            sourceTransactionId=transactionId,
            rank=rank,
            details={
                "activationAmount": str(activationAmount),
                "isReTopup": True,
            },
            description=f"Re-topup income from {activatorId}"
        )

    # ═══════════════════════════════════════════════════════════════════════
    # LEVEL INCOME
    # ═══════════════════════════════════════════════════════════════════════

    async def processLevelIncome(
            self,
            activatorId: str,
            activationAmount: Decimal,
            transactionId: str,
            rank: str
    ) -> List[Dict]:
        """
        Level income up to MAX_UPLINE_LEVELS sponsors.
        A skipped level does not skip the levels above it.
        """
        levels = int(Config.get(Config.MAX_UPLINE_LEVELS, 6))
        chain = await self.getUplineChain(activatorId, levels)

        incomes = []

        for level, uplineId in enumerate(chain, start=1):
            incomeAmount = calculate_level_income(level, activationAmount)

            if incomeAmount <= 0:
                logger.info(f"Level {level} income for {uplineId} is {incomeAmount}, skipping")
                continue

            if not await self.checkLevelIncomeEligibility(uplineId, rank):
                logger.debug(f"User {uplineId} not eligible for level {level} income, skipping")
                continue

            income = await self.creditIncome(
                userId=uplineId,
                incomeType="level",
                amount=incomeAmount,
                sourceUserId=activatorId,
                sourceTransactionId=transactionId,
                rank=rank,
                level=level,
                details={
                    "activationAmount": str(activationAmount),
                    "levelPercentage": str(get_level_percentage(level)),
                },
                description=f"Level {level} income from {activatorId}"
            )
            if income:
                incomes.append(income)

        return incomes

    async def getUplineChain(self, userId: str, levels: int = 6) -> List[str]:
        """Sponsor ids above userId, nearest first, at most `levels` entries."""
        return await self.store.getUplineIds(userId, levels)

    async def checkLevelIncomeEligibility(self, userId: str, rank: str) -> bool:
        """Active user with a rank."""
        user = await self.store.getUser(userId)
        if not user:
            return False
        return user.isActive is True and bool(user.currentRank)

    # ═══════════════════════════════════════════════════════════════════════
    # GLOBAL INCOME
    # ═══════════════════════════════════════════════════════════════════════

    async def checkGlobalIncomeEligibility(self, userId: str, rank: str) -> bool:
        """Depends on the rank's globalIncome benefit only."""
        return has_benefit(rank, "globalIncome")

    async def processGlobalIncome(
            self,
            activatorId: str,
            activationAmount: Decimal,
            transactionId: str,
            rank: str,
            depth: int = 0
    ) -> Optional[Dict]:
        """
        Queue activator in the rank's global cycle; pay the cycle out
        when this add completed it, or when a retried run finds its cycle
        complete with the payout released.
        """
        if not await self.checkGlobalIncomeEligibility(activatorId, rank):
            logger.debug(f"Rank {rank} has no global income, {activatorId} not queued")
            return None

        cycleData = await self.cycleManager.addToGlobalCycle(activatorId, rank, transactionId=transactionId)

        if cycleData["completedNow"]:
            logger.info(f"🎉 Global cycle {cycleData['cycleId']} ({rank}) completed by {activatorId}")
            cycleData["payout"] = await self.cycleManager.processGlobalCyclePayout(cycleData, depth=depth)
        elif cycleData["isComplete"] and not cycleData["payoutProcessed"]:
            # Retried run whose earlier payout attempt was released
            logger.info(f"Resuming payout of global cycle {cycleData['cycleId']} ({rank})")
            cycleData["payout"] = await self.cycleManager.processGlobalCyclePayout(cycleData, depth=depth)

        return cycleData
