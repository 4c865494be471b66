# tests/test_income_engine.py
"""
Tests for IncomeEngine.processAllIncomes.

Chain used by most tests:
    U6 (root) <- U5 <- U4 <- U3 <- U2 <- U1 <- A

Run:
    pytest tests/test_income_engine.py -v
"""
from decimal import Decimal

import pytest

from models import User, Income, IncomeTransaction, GlobalCycle
from mlm_system.events.event_bus import MLMEvents
from mlm_system.exceptions import (
    InvalidActivationError,
    UnknownRankError,
    UserNotFoundError,
    CascadeDepthError,
)

FULL_WALK = [
    ("referral", "U1", None, Decimal("50.00")),
    ("level", "U1", 1, Decimal("5.00")),
    ("level", "U2", 2, Decimal("4.00")),
    ("level", "U3", 3, Decimal("3.00")),
    ("level", "U4", 4, Decimal("1.00")),
    ("level", "U5", 5, Decimal("1.00")),
    ("level", "U6", 6, Decimal("1.00")),
]


def _records(session):
    return [
        (i.incomeType, i.userID, i.level, i.amount)
        for i in session.query(Income).order_by(Income.incomeID).all()
    ]


def _balances(session):
    return {u.userID: u.availableBalance for u in session.query(User).all()}


# =============================================================================
# TEST CLASS: Full activation walk
# =============================================================================

class TestActivationWalk:

    def test_full_walk_creates_seven_incomes(self, session, income_engine, make_chain, run):
        make_chain(length=6)

        # azurite has no global income, keeps the walk to referral + level
        result = run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite"))

        assert result["success"] is True
        assert result["totalDistributed"] == Decimal("65.00")
        assert len(result["incomes"]) == 7
        assert result["cycle"] is None

        assert _records(session) == FULL_WALK
        assert session.query(IncomeTransaction).count() == 7

        balances = _balances(session)
        assert balances["U1"] == Decimal("55.00")
        assert balances["U2"] == Decimal("4.00")
        assert balances["U3"] == Decimal("3.00")
        assert balances["U4"] == Decimal("1.00")
        assert balances["U5"] == Decimal("1.00")
        assert balances["U6"] == Decimal("1.00")
        assert balances["A"] == Decimal("0.00")

    def test_income_records_reference_source(self, session, income_engine, make_chain, run):
        make_chain(length=1)

        run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite"))

        referral = session.query(Income).filter_by(incomeType="referral").one()
        assert referral.sourceUserID == "A"
        assert referral.sourceTransactionID == "tx-1"
        assert referral.rank == "azurite"
        assert referral.status == "pending"
        assert referral.details["referralPercentage"] == "50"

    def test_inactive_upline_skipped_without_gap(self, session, income_engine, make_chain, run):
        make_chain(length=6, inactive=("U3",))

        run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite"))

        records = _records(session)
        assert ("level", "U3", 3, Decimal("3.00")) not in records
        assert [r for r in FULL_WALK if r[1] != "U3"] == records

    def test_upline_without_rank_skipped(self, session, income_engine, make_chain, run):
        make_chain(length=2)
        session.query(User).filter_by(userID="U2").update({"currentRank": None})
        session.commit()

        run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite"))

        assert [(r[1], r[2]) for r in _records(session)] == [("U1", None), ("U1", 1)]

    def test_short_chain(self, session, income_engine, make_chain, run):
        make_chain(length=3)

        result = run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite"))

        assert len(result["incomes"]) == 4
        assert result["totalDistributed"] == Decimal("62.00")

    def test_root_activation_pays_nothing(self, session, income_engine, make_user, run):
        make_user("root")

        result = run(income_engine.processAllIncomes("root", 100, "tx-1", "azurite"))

        assert result["success"] is True
        assert result["incomes"] == []
        assert session.query(Income).count() == 0

    def test_zero_amount_skips_incomes_but_joins_cycle(self, session, income_engine, make_chain, run):
        make_chain(length=2)

        result = run(income_engine.processAllIncomes("A", 0, "tx-1", "pearl"))

        assert session.query(Income).count() == 0
        assert result["cycle"]["position"] == 1
        assert session.query(GlobalCycle).one().participants == ["A"]

    def test_retopup_pays_retopup_income(self, session, income_engine, make_chain, run):
        make_chain(length=1)

        run(income_engine.processAllIncomes("A", 40, "tx-1", "azurite", isReTopup=True))

        assert _records(session) == [
            ("retopup", "U1", None, Decimal("20.00")),
            ("level", "U1", 1, Decimal("2.00")),
        ]

    def test_float_amount(self, session, income_engine, make_chain, run):
        make_chain(length=1)

        run(income_engine.processAllIncomes("A", 10.1, "tx-1", "azurite"))

        assert _records(session)[0][3] == Decimal("5.05")

    def test_income_events_emitted(self, income_engine, make_chain, run, captured_events):
        make_chain(length=2)
        events = captured_events(MLMEvents.INCOME_CREDITED)

        run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite"))

        credited = events[MLMEvents.INCOME_CREDITED]
        assert [(e["incomeType"], e["userId"]) for e in credited] == [
            ("referral", "U1"), ("level", "U1"), ("level", "U2"),
        ]

    def test_failing_listener_does_not_break_engine(self, session, income_engine, make_chain, run):
        from mlm_system.events.event_bus import eventBus

        def broken(data):
            raise RuntimeError("listener down")

        eventBus.subscribe(MLMEvents.INCOME_CREDITED, broken)
        make_chain(length=1)

        result = run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite"))

        assert len(result["incomes"]) == 2


# =============================================================================
# TEST CLASS: Idempotency and failures
# =============================================================================

class TestIdempotency:

    def test_same_transaction_processed_once(self, session, income_engine, make_chain, run):
        make_chain(length=6)

        run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite"))
        second = run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite"))

        assert second["success"] is False
        assert second["duplicate"] is True
        assert session.query(Income).count() == 7
        assert _balances(session)["U1"] == Decimal("55.00")

    def test_new_transaction_pays_again(self, session, income_engine, make_chain, run):
        make_chain(length=1)

        run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite"))
        run(income_engine.processAllIncomes("A", 100, "tx-2", "azurite"))

        assert _balances(session)["U1"] == Decimal("110.00")

    def test_dangling_sponsor_raises_and_marks_run_failed(self, session, store, income_engine, make_user, run):
        make_user("A", active=False)
        session.query(User).filter_by(userID="A").update({"sponsorID": "ghost"})
        session.commit()

        with pytest.raises(UserNotFoundError):
            run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite"))

        incomeRun = run(store.getIncomeRun("tx-1"))
        assert incomeRun.status == "failed"
        assert "ghost" in incomeRun.error
        assert session.query(Income).count() == 0

    def test_failed_run_retry_does_not_double_pay(self, session, store, income_engine, make_chain, run):
        make_chain(length=2)

        # Earlier attempt credited the referral, then died
        run(store.beginIncomeRun("tx-1", "A", "azurite", Decimal("100")))
        run(store.creditIncome({
            "userId": "U1", "incomeType": "referral", "amount": Decimal("50.00"),
            "sourceUserId": "A", "sourceTransactionId": "tx-1", "level": None, "rank": "azurite",
        }, "Referral income from A"))
        run(store.failIncomeRun("tx-1", "store down"))

        result = run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite"))

        assert result["success"] is True
        assert session.query(Income).filter_by(incomeType="referral").count() == 1
        assert _balances(session)["U1"] == Decimal("55.00")
        assert _balances(session)["U2"] == Decimal("4.00")


# =============================================================================
# TEST CLASS: Inbound contract
# =============================================================================

class TestValidation:

    @pytest.mark.parametrize("activatorId, amount, tx", [
        ("", 100, "tx-1"),
        (None, 100, "tx-1"),
        ("A", 100, ""),
        ("A", -5, "tx-1"),
        ("A", "10.001", "tx-1"),
        ("A", "abc", "tx-1"),
    ])
    def test_invalid_calls_rejected_before_writes(self, session, income_engine, make_chain, run, activatorId, amount, tx):
        make_chain(length=1)

        with pytest.raises(InvalidActivationError):
            run(income_engine.processAllIncomes(activatorId, amount, tx, "azurite"))

        assert session.query(Income).count() == 0

    def test_unknown_rank(self, income_engine, make_chain, run):
        make_chain(length=1)

        with pytest.raises(UnknownRankError):
            run(income_engine.processAllIncomes("A", 100, "tx-1", "bronze"))

    def test_unknown_activator(self, income_engine, run, store):
        with pytest.raises(UserNotFoundError):
            run(income_engine.processAllIncomes("nobody", 100, "tx-1", "azurite"))

        assert run(store.getIncomeRun("tx-1")) is None

    def test_cascade_depth_guard(self, income_engine, make_chain, run):
        make_chain(length=1)

        with pytest.raises(CascadeDepthError):
            run(income_engine.processAllIncomes("A", 100, "tx-1", "azurite", _depth=11))


# =============================================================================
# TEST CLASS: Helpers
# =============================================================================

class TestHelpers:

    def test_upline_chain_shorter_than_requested(self, income_engine, make_chain, run):
        make_chain(length=3)

        assert run(income_engine.getUplineChain("A", 6)) == ["U1", "U2", "U3"]

    def test_level_eligibility(self, income_engine, make_user, run):
        make_user("active", rank="ruby")
        make_user("inactive", rank="ruby", active=False)
        make_user("unranked", rank="")

        assert run(income_engine.checkLevelIncomeEligibility("active", "pearl")) is True
        assert run(income_engine.checkLevelIncomeEligibility("inactive", "pearl")) is False
        assert run(income_engine.checkLevelIncomeEligibility("unranked", "pearl")) is False
        assert run(income_engine.checkLevelIncomeEligibility("nobody", "pearl")) is False

    def test_global_eligibility_by_rank(self, income_engine, run):
        assert run(income_engine.checkGlobalIncomeEligibility("A", "pearl")) is True
        assert run(income_engine.checkGlobalIncomeEligibility("A", "azurite")) is False
