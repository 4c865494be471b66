# rankcycle/mlm_system/services/global_cycle_service.py
"""
Global cycle manager - rank-scoped participant queues, leveled payout,
auto top-up to the next rank and RE-ID generation.
"""
from decimal import Decimal
from typing import List, Dict, Optional, Any, Union
import logging

from config import Config
from models.mlm.global_cycle import GlobalCycle
from mlm_system.config.ranks import get_rank, get_next_rank
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.exceptions import IncomeEngineError
from mlm_system.store.ledger_store import LedgerStore
from mlm_system.utils.money import (
    calculate_global_income,
    calculate_tree_level,
    round_to_two_decimals,
    safe_add,
    to_decimal,
    ZERO,
)

logger = logging.getLogger(__name__)

# Attempts to find an open cycle before giving up on a rank
PLACEMENT_ATTEMPTS = 3


class GlobalCycleManager:
    """Service for global cycles."""

    def __init__(self, store: LedgerStore, engine=None):
        self.store = store
        self._engine = engine

    @property
    def engine(self):
        if self._engine is None:
            from mlm_system.services.income_engine import IncomeEngine
            self._engine = IncomeEngine(self.store, cycleManager=self)
        return self._engine

    @staticmethod
    def getCycleSize() -> int:
        return int(Config.get(Config.CYCLE_SIZE, 1024))

    @staticmethod
    def getTotalLevels() -> int:
        return int(Config.get(Config.GLOBAL_LEVELS, 10))

    # ═══════════════════════════════════════════════════════════════════════
    # QUEUE
    # ═══════════════════════════════════════════════════════════════════════

    async def addToGlobalCycle(self, userId: str, rank: str, transactionId: Optional[str] = None) -> Dict[str, Any]:
        """
        Queue user in the active cycle of rank.

        A user already queued in the active cycle keeps the existing position
        (added=False). Completed cycles are never appended to. With
        transactionId, a run that already took a slot gets that slot back
        instead of a new one.

        Returns:
            Dict with cycleId, rank, position, level, participants,
            totalAmount, isComplete, completedNow, payoutProcessed, added
        """
        if transactionId:
            incomeRun = await self.store.getIncomeRun(transactionId)
            if incomeRun is not None and incomeRun.cycleID is not None:
                cycle = await self.store.getCycle(incomeRun.cycleID)
                logger.info(
                    f"Transaction {transactionId} already placed {userId} in cycle "
                    f"{incomeRun.cycleID} at position {incomeRun.cyclePosition}"
                )
                completedNow = False
                if incomeRun.cyclePosition >= self.getCycleSize() and not cycle.isComplete:
                    completedNow = await self.store.markCycleComplete(cycle.cycleID)
                return self._placement(cycle, incomeRun.cyclePosition, completedNow=completedNow, added=False)

        cycleSize = self.getCycleSize()
        cycle = None
        position = 0
        added = False

        for _ in range(PLACEMENT_ATTEMPTS):
            cycle = await self.store.queryActiveCycle(rank)

            if cycle is None:
                cycle = await self.store.createCycle(rank, userId)
                position, added = 1, True
                break

            placement = await self.store.appendParticipant(cycle.cycleID, userId, capacity=cycleSize)
            if placement is not None:
                position, added = placement
                break

            # Full but still open, close it so the payout sweep picks it up
            if cycle.participantCount >= cycleSize:
                logger.warning(f"Cycle {cycle.cycleID} ({rank}) is full but open, closing")
                await self.store.markCycleComplete(cycle.cycleID)
        else:
            raise IncomeEngineError(f"Could not place {userId} into a {rank} global cycle")

        if not added:
            logger.info(f"User {userId} already in cycle {cycle.cycleID} at position {position}, ignored")

        if transactionId:
            await self.store.recordRunPlacement(transactionId, cycle.cycleID, position)

        completedNow = False
        if position >= cycleSize and not cycle.isComplete:
            completedNow = await self.store.markCycleComplete(cycle.cycleID)

        logger.debug(
            f"User {userId} at position {position}/{cycleSize} of cycle {cycle.cycleID} ({rank})"
        )

        return self._placement(cycle, position, completedNow=completedNow, added=added)

    @staticmethod
    def _placement(cycle: GlobalCycle, position: int, completedNow: bool, added: bool) -> Dict[str, Any]:
        # Expired by the last commit, reads current state
        return {
            "cycleId": cycle.cycleID,
            "rank": cycle.rank,
            "position": position,
            "level": calculate_tree_level(position),
            "participants": list(cycle.participants or []),
            "totalAmount": to_decimal(cycle.totalAmount or ZERO),
            "isComplete": bool(cycle.isComplete),
            "completedNow": completedNow,
            "payoutProcessed": bool(cycle.payoutProcessed),
            "added": added,
        }

    @staticmethod
    def getParticipantsAtLevel(participants: List[str], level: int) -> List[str]:
        """Participants at 0-based indices [2^(level-1) - 1, 2^level - 2]."""
        if level < 1:
            return []
        start = 2 ** (level - 1) - 1
        end = 2 ** level - 1
        return list(participants[start:end])

    # ═══════════════════════════════════════════════════════════════════════
    # PAYOUT
    # ═══════════════════════════════════════════════════════════════════════

    async def processGlobalCyclePayout(
            self,
            cycle: Union[GlobalCycle, Dict[str, Any], int],
            depth: int = 0
    ) -> Optional[Dict[str, Any]]:
        """
        Pay out a completed cycle once, then advance its first participant.

        Returns:
            Payout summary, None when the payout was already claimed
        """
        cycleId = self._cycleId(cycle)

        if not await self.store.claimCyclePayout(cycleId):
            logger.warning(f"Payout of cycle {cycleId} already processed or cycle not complete")
            return None

        cycle = await self.store.getCycle(cycleId)
        rankConfig = get_rank(cycle.rank)
        payoutAmount = round_to_two_decimals(
            rankConfig["activationAmount"] * to_decimal(Config.get(Config.GLOBAL_PERCENTAGE, Decimal("10"))) / 100
        )
        totalLevels = self.getTotalLevels()
        participants = list(cycle.participants or [])

        incomes = []
        totalPaid = ZERO

        try:
            for level in range(1, totalLevels + 1):
                for participantId in self.getParticipantsAtLevel(participants, level):
                    amount = calculate_global_income(payoutAmount, level, totalLevels)
                    if amount <= 0:
                        continue

                    income = await self.engine.creditIncome(
                        userId=participantId,
                        incomeType="global",
                        amount=amount,
                        sourceUserId=None,
                        sourceTransactionId=f"cycle:{cycleId}",
                        rank=cycle.rank,
                        level=level,
                        details={
                            "cycleId": cycleId,
                            "globalLevel": level,
                            "totalParticipants": len(participants),
                            "payoutAmount": str(payoutAmount),
                        },
                        description=f"Global cycle payout - Level {level}"
                    )
                    if income:
                        incomes.append(income)
                        totalPaid = safe_add(totalPaid, amount)

            await self.store.addCycleAmount(cycleId, totalPaid)

        except Exception as e:
            logger.error(f"Payout of cycle {cycleId} failed, released for retry: {e}", exc_info=True)
            await self.store.releaseCyclePayout(cycleId)
            raise

        logger.info(
            f"✅ Global cycle {cycleId} ({cycle.rank}) paid: "
            f"{len(incomes)} incomes, total {totalPaid}"
        )

        await eventBus.emit(MLMEvents.GLOBAL_CYCLE_COMPLETED, {
            "cycleId": cycleId,
            "rank": cycle.rank,
            "payoutAmount": payoutAmount,
            "totalDistributed": totalPaid,
            "participants": len(participants),
        })

        advancement = await self.processAutoTopUpAndREID(cycle, depth=depth)

        return {
            "cycleId": cycleId,
            "rank": cycle.rank,
            "payoutAmount": payoutAmount,
            "incomes": incomes,
            "totalDistributed": totalPaid,
            "advancement": advancement,
        }

    @staticmethod
    def _cycleId(cycle) -> int:
        if isinstance(cycle, GlobalCycle):
            return cycle.cycleID
        if isinstance(cycle, dict):
            return cycle["cycleId"]
        return int(cycle)

    # ═══════════════════════════════════════════════════════════════════════
    # ADVANCEMENT
    # ═══════════════════════════════════════════════════════════════════════

    async def processAutoTopUpAndREID(self, cycle: GlobalCycle, depth: int = 0) -> Optional[Dict[str, Any]]:
        """
        First participant of a paid cycle advances one rank, or gets a RE-ID
        at the highest rank.
        """
        if not Config.get(Config.AUTO_TOPUP_ENABLED, True):
            logger.info(f"Auto top-up disabled, cycle {cycle.cycleID} has no advancement")
            return None

        participants = cycle.participants or []
        if not participants:
            return None

        userId = participants[0]
        nextRank = get_next_rank(cycle.rank)

        if nextRank:
            return await self._autoTopUp(userId, cycle, nextRank, depth)

        if Config.get(Config.REID_ENABLED, False):
            return await self._generateReid(userId, cycle)

        logger.info(f"User {userId} at highest rank {cycle.rank}, RE-ID disabled")
        return None

    async def _autoTopUp(self, userId: str, cycle: GlobalCycle, nextRank: str, depth: int) -> Dict[str, Any]:
        amount = get_rank(nextRank)["activationAmount"]

        transaction = await self.store.createTransaction({
            "userId": userId,
            "transactionType": "auto_topup",
            "amount": amount,
            "rank": nextRank,
            "status": "completed",
            "details": {
                "autoGenerated": True,
                "previousRank": cycle.rank,
                "sourceCycleId": cycle.cycleID,
            },
        })

        await self.store.updateUser(userId, currentRank=nextRank)

        logger.info(f"⬆️ Auto top-up: {userId} {cycle.rank} -> {nextRank} ({amount}), tx {transaction.transactionID}")

        await eventBus.emit(MLMEvents.RANK_ADVANCED, {
            "userId": userId,
            "fromRank": cycle.rank,
            "toRank": nextRank,
            "transactionId": transaction.transactionID,
            "cycleId": cycle.cycleID,
        })

        try:
            result = await self.engine.processAllIncomes(
                userId, amount, transaction.transactionID, nextRank,
                isReTopup=True, _depth=depth + 1
            )
        except Exception as e:
            await self.store.markTransactionProcessed(transaction.transactionID, success=False, error=str(e))
            raise

        await self.store.markTransactionProcessed(transaction.transactionID)

        return {
            "type": "auto_topup",
            "userId": userId,
            "fromRank": cycle.rank,
            "toRank": nextRank,
            "amount": amount,
            "transactionId": transaction.transactionID,
            "result": result,
        }

    async def _generateReid(self, userId: str, cycle: GlobalCycle) -> Dict[str, Any]:
        reid = await self.store.createReid(userId, cycle.rank, cycle.cycleID)

        logger.info(f"🔁 RE-ID {reid.reidID} generated for {userId} at {cycle.rank}")

        await eventBus.emit(MLMEvents.REID_GENERATED, {
            "reidId": reid.reidID,
            "userId": userId,
            "rank": cycle.rank,
            "cycleId": cycle.cycleID,
        })

        return {
            "type": "reid",
            "userId": userId,
            "rank": cycle.rank,
            "reidId": reid.reidID,
        }

    # ═══════════════════════════════════════════════════════════════════════
    # MAINTENANCE
    # ═══════════════════════════════════════════════════════════════════════

    async def processPendingPayouts(self, limit: int = 10) -> Dict[str, int]:
        """
        Pay out completed cycles whose payout never ran.
        A failing cycle is logged and the sweep moves on.
        """
        cycles = await self.store.listUnpaidCompletedCycles(limit)
        stats = {"found": len(cycles), "processed": 0, "errors": 0}

        for cycle in cycles:
            cycleId = cycle.cycleID
            try:
                result = await self.processGlobalCyclePayout(cycleId)
                if result:
                    stats["processed"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"Error processing pending payout of cycle {cycleId}: {e}", exc_info=True)

        if cycles:
            logger.info(
                f"Pending payouts: {stats['processed']}/{stats['found']} processed, "
                f"{stats['errors']} errors"
            )

        return stats

    async def getCycleStatus(self, rank: str) -> Dict[str, Any]:
        """Progress of the active cycle of rank."""
        get_rank(rank)

        cycleSize = self.getCycleSize()
        cycle = await self.store.queryActiveCycle(rank)
        count = cycle.participantCount if cycle else 0

        return {
            "rank": rank,
            "cycleId": cycle.cycleID if cycle else None,
            "participants": count,
            "cycleSize": cycleSize,
            "remaining": cycleSize - count,
            "progress": round(count * 100 / cycleSize, 2) if cycleSize else 0,
        }
