#!/usr/bin/env python3
"""
Check incomes for an activation transaction or a user.

Usage:
    python scripts/check_incomes.py --transaction-id <id>
    python scripts/check_incomes.py --last          # Last activation transaction
    python scripts/check_incomes.py --user-id <id>  # All incomes of a user
"""

import sys
import os
import argparse
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from core.db import get_session
from models.user import User
from models.income import Income
from models.transaction import Transaction
from mlm_system.utils.money import (
    calculate_referral_income,
    calculate_level_income,
    format_currency,
    safe_add,
)

import logging

logging.basicConfig(level=logging.WARNING)


def print_incomes(session, incomes):
    total = Decimal("0")

    for income in incomes:
        user = session.query(User).filter_by(userID=income.userID).first()
        name = (user.firstname or user.userID) if user else f"<missing {income.userID}>"
        active_marker = "✅" if user and user.isActive else "❌"
        level = f"L{income.level}" if income.level else "--"

        print(
            f"{income.incomeType:9} {level:4} "
            f"{name[:20]:20} {active_marker} "
            f"{format_currency(income.amount):>12} "
            f"({income.status}) tx={income.sourceTransactionID}"
        )
        total = safe_add(total, income.amount)

    print("-" * 80)
    print(f"\nTotal: {format_currency(total)}")
    return total


def check_transaction(session, transaction):
    activator = session.query(User).filter_by(userID=transaction.userID).first()

    print("\n" + "=" * 80)
    print("INCOME CHECK")
    print("=" * 80)
    print(f"\nTransaction: {transaction.transactionID} ({transaction.transactionType})")
    print(f"Activator: {activator.firstname if activator else '?'} (ID: {transaction.userID})")
    print(f"Rank: {transaction.rank}")
    print(f"Amount: {format_currency(transaction.amount)}")
    print(f"Income status: {transaction.incomeStatus}")
    if transaction.incomeError:
        print(f"Income error: {transaction.incomeError}")

    incomes = session.query(Income).filter_by(
        sourceTransactionID=transaction.transactionID
    ).order_by(Income.incomeID).all()

    if not incomes:
        print("\n❌ No incomes found for this transaction")
        return

    print(f"\n{len(incomes)} income(s) found:")
    print("-" * 80)
    total = print_incomes(session, incomes)

    maximum = safe_add(
        calculate_referral_income(transaction.amount),
        *[calculate_level_income(level, transaction.amount) for level in range(1, 7)]
    )
    print(f"Maximum (all upline eligible): {format_currency(maximum)}")

    if total > maximum:
        print("\n⚠️  WARNING: Paid more than the maximum!")
    elif total == maximum:
        print("\n✅ Full distribution")
    else:
        print("\nℹ️  Partial distribution (short chain or ineligible upline)")


def main():
    """Check incomes."""
    parser = argparse.ArgumentParser(description='Check incomes for transaction or user')
    parser.add_argument('--transaction-id', help='Transaction ID to check')
    parser.add_argument('--last', action='store_true', help='Check last transaction')
    parser.add_argument('--user-id', help='List all incomes of user')
    args = parser.parse_args()

    Config.initialize_from_env()
    session = get_session()

    try:
        if args.user_id:
            incomes = session.query(Income).filter_by(
                userID=args.user_id
            ).order_by(Income.incomeID).all()

            print(f"\n{len(incomes)} income(s) for user {args.user_id}:")
            print("-" * 80)
            print_incomes(session, incomes)

            user = session.query(User).filter_by(userID=args.user_id).first()
            if user:
                print(f"Balance: {format_currency(user.availableBalance)}")
                print(f"Total earnings: {format_currency(user.totalEarnings)}")
            return

        if args.last:
            transaction = session.query(Transaction).order_by(
                Transaction.createdAt.desc()
            ).first()
        elif args.transaction_id:
            transaction = session.query(Transaction).filter_by(
                transactionID=args.transaction_id
            ).first()
        else:
            print("❌ Specify --transaction-id, --last or --user-id")
            return

        if not transaction:
            print("❌ Transaction not found")
            return

        check_transaction(session, transaction)
        print("\n" + "=" * 80 + "\n")

    finally:
        session.close()


if __name__ == "__main__":
    main()
