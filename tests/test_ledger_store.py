# tests/test_ledger_store.py
"""
Tests for LedgerStore: balances, atomic income credit, cycle flags and income runs.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from models import User, Income, IncomeTransaction, GlobalCycle
from mlm_system.exceptions import UserNotFoundError
from mlm_system.utils.time_machine import timeMachine


# =============================================================================
# TEST CLASS: Users and balances
# =============================================================================

class TestUsers:

    def test_create_user_requires_existing_sponsor(self, store, run):
        with pytest.raises(UserNotFoundError):
            run(store.createUser(userId="orphan", sponsorId="ghost"))

    def test_create_root_user(self, store, run):
        user = run(store.createUser(userId="root"))
        assert user.sponsorID is None
        assert user.availableBalance == Decimal("0")

    def test_get_user_required(self, store, run):
        assert run(store.getUser("nobody")) is None
        with pytest.raises(UserNotFoundError):
            run(store.getUser("nobody", required=True))

    def test_increment_team_counters(self, store, run, make_chain, session):
        make_chain(length=3)

        assert run(store.incrementTeamCounters("A")) == 3

        users = {u.userID: u for u in session.query(User).all()}
        assert users["U1"].directReferrals == 1
        assert users["U2"].directReferrals == 0
        assert [users[u].teamSize for u in ("U1", "U2", "U3")] == [1, 1, 1]


class TestUpdateBalance:

    def test_add_increases_balance_and_earnings(self, store, run, make_user):
        make_user("u1")

        run(store.updateBalance("u1", Decimal("10.10")))
        user = run(store.updateBalance("u1", 0.2))

        assert user.availableBalance == Decimal("10.30")
        assert user.totalEarnings == Decimal("10.30")

    def test_subtract_floors_at_zero(self, store, run, make_user):
        make_user("u1")
        run(store.updateBalance("u1", Decimal("5.00")))

        user = run(store.updateBalance("u1", Decimal("7.50"), "subtract"))

        assert user.availableBalance == Decimal("0.00")
        assert user.totalEarnings == Decimal("5.00")

    def test_subtract(self, store, run, make_user):
        make_user("u1")
        run(store.updateBalance("u1", Decimal("5.00")))

        user = run(store.updateBalance("u1", Decimal("1.25"), "subtract"))

        assert user.availableBalance == Decimal("3.75")

    def test_unknown_user_raises(self, store, run):
        with pytest.raises(UserNotFoundError):
            run(store.updateBalance("nobody", Decimal("1.00")))

    def test_unknown_operation_raises(self, store, run, make_user):
        make_user("u1")
        with pytest.raises(ValueError):
            run(store.updateBalance("u1", Decimal("1.00"), "multiply"))


# =============================================================================
# TEST CLASS: creditIncome
# =============================================================================

def _income(userId="u1", level=None, incomeType="referral", tx="tx-1", amount="50.00"):
    return {
        "userId": userId,
        "incomeType": incomeType,
        "amount": Decimal(amount),
        "sourceUserId": "A",
        "sourceTransactionId": tx,
        "level": level,
        "rank": "pearl",
        "details": {"activationAmount": "100"},
    }


class TestCreditIncome:

    def test_writes_record_balance_and_entry(self, store, run, make_user, session):
        make_user("u1")

        income = run(store.creditIncome(_income(), "Referral income from A"))

        assert income.incomeID is not None
        assert income.status == "pending"
        assert income.details == {"activationAmount": "100"}

        entry = session.query(IncomeTransaction).one()
        assert entry.incomeID == income.incomeID
        assert entry.subType == "referral"
        assert entry.amount == Decimal("50.00")
        assert entry.description == "Referral income from A"

        assert run(store.getUser("u1")).availableBalance == Decimal("50.00")

    def test_same_income_credited_once(self, store, run, make_user, session):
        make_user("u1")

        assert run(store.creditIncome(_income(), "first")) is not None
        assert run(store.creditIncome(_income(), "second")) is None

        assert session.query(Income).count() == 1
        assert session.query(IncomeTransaction).count() == 1
        assert run(store.getUser("u1")).availableBalance == Decimal("50.00")

    def test_different_levels_are_different_incomes(self, store, run, make_user, session):
        make_user("u1")

        run(store.creditIncome(_income(incomeType="level", level=1, amount="5.00"), "L1"))
        run(store.creditIncome(_income(incomeType="level", level=2, amount="4.00"), "L2"))

        assert session.query(Income).count() == 2

    def test_missing_recipient_leaves_nothing(self, store, run, session):
        with pytest.raises(UserNotFoundError):
            run(store.creditIncome(_income(userId="ghost"), "nope"))

        assert session.query(Income).count() == 0
        assert session.query(IncomeTransaction).count() == 0

    def test_list_incomes_filters(self, store, run, make_user):
        make_user("u1")
        make_user("u2")
        run(store.creditIncome(_income(userId="u1"), "a"))
        run(store.creditIncome(_income(userId="u2", tx="tx-2"), "b"))

        assert len(run(store.listIncomes())) == 2
        assert [i.userID for i in run(store.listIncomes(transactionId="tx-2"))] == ["u2"]
        assert run(store.listIncomes(userId="u1", incomeType="level")) == []


# =============================================================================
# TEST CLASS: Cycle flags
# =============================================================================

class TestCycles:

    def test_append_deduplicates(self, store, run):
        cycle = run(store.createCycle("pearl", "u1"))

        assert run(store.appendParticipant(cycle.cycleID, "u2")) == (2, True)
        assert run(store.appendParticipant(cycle.cycleID, "u1")) == (1, False)
        assert run(store.getCycle(cycle.cycleID)).participants == ["u1", "u2"]

    def test_append_respects_capacity(self, store, run):
        cycle = run(store.createCycle("pearl", "u1"))
        run(store.appendParticipant(cycle.cycleID, "u2", capacity=2))

        assert run(store.appendParticipant(cycle.cycleID, "u3", capacity=2)) is None

    def test_complete_cycle_refuses_append(self, store, run):
        cycle = run(store.createCycle("pearl", "u1"))
        run(store.markCycleComplete(cycle.cycleID))

        assert run(store.appendParticipant(cycle.cycleID, "u2")) is None
        assert run(store.queryActiveCycle("pearl")) is None

    def test_mark_complete_once(self, store, run):
        cycle = run(store.createCycle("pearl", "u1"))

        assert run(store.markCycleComplete(cycle.cycleID)) is True
        assert run(store.markCycleComplete(cycle.cycleID)) is False

        cycle = run(store.getCycle(cycle.cycleID))
        assert cycle.isComplete
        assert cycle.completedAt is not None

    def test_claim_payout_once(self, store, run):
        cycle = run(store.createCycle("pearl", "u1"))

        # Not complete yet
        assert run(store.claimCyclePayout(cycle.cycleID)) is False

        run(store.markCycleComplete(cycle.cycleID))
        assert run(store.claimCyclePayout(cycle.cycleID)) is True
        assert run(store.claimCyclePayout(cycle.cycleID)) is False

        run(store.releaseCyclePayout(cycle.cycleID))
        assert run(store.listUnpaidCompletedCycles()) != []

    def test_active_cycle_is_oldest_open(self, store, run, session):
        first = run(store.createCycle("pearl", "u1"))
        run(store.createCycle("pearl", "u2"))
        run(store.createCycle("ruby", "u3"))

        assert run(store.queryActiveCycle("pearl")).cycleID == first.cycleID
        assert session.query(GlobalCycle).count() == 3


# =============================================================================
# TEST CLASS: Income runs
# =============================================================================

class TestIncomeRuns:

    def test_run_claimed_once(self, store, run):
        assert run(store.beginIncomeRun("tx-1", "A", "pearl", Decimal("10"))) is True
        assert run(store.beginIncomeRun("tx-1", "A", "pearl", Decimal("10"))) is False

        run(store.finishIncomeRun("tx-1"))
        assert run(store.beginIncomeRun("tx-1", "A", "pearl", Decimal("10"))) is False
        assert run(store.getIncomeRun("tx-1")).status == "done"

    def test_failed_run_can_be_retried(self, store, run):
        run(store.beginIncomeRun("tx-1", "A", "pearl", Decimal("10")))
        run(store.failIncomeRun("tx-1", "boom"))

        assert run(store.getIncomeRun("tx-1")).error == "boom"
        assert run(store.beginIncomeRun("tx-1", "A", "pearl", Decimal("10"))) is True

        incomeRun = run(store.getIncomeRun("tx-1"))
        assert incomeRun.attempts == 2
        assert incomeRun.status == "processing"
        assert incomeRun.error is None

    def test_placement_survives_retry(self, store, run):
        run(store.beginIncomeRun("tx-1", "A", "pearl", Decimal("10")))
        run(store.recordRunPlacement("tx-1", 7, 3))
        run(store.failIncomeRun("tx-1", "boom"))
        run(store.beginIncomeRun("tx-1", "A", "pearl", Decimal("10")))

        incomeRun = run(store.getIncomeRun("tx-1"))
        assert (incomeRun.cycleID, incomeRun.cyclePosition) == (7, 3)

    def test_only_stale_processing_run_is_failed(self, store, run):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        timeMachine.setTime(start)
        run(store.beginIncomeRun("tx-1", "A", "pearl", Decimal("10")))

        assert run(store.failStaleIncomeRun("tx-1", start - timedelta(minutes=1), "stuck")) is False

        timeMachine.setTime(start + timedelta(hours=1))
        assert run(store.failStaleIncomeRun("tx-1", start + timedelta(minutes=30), "stuck")) is True
        assert run(store.getIncomeRun("tx-1")).status == "failed"

        # Already failed
        assert run(store.failStaleIncomeRun("tx-1", start + timedelta(minutes=30), "stuck")) is False
