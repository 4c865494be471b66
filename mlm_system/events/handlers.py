# rankcycle/mlm_system/events/handlers.py
"""
Event handlers for the income engine.
"""
import logging
from typing import Dict, Any

from core.db import get_session
from mlm_system.services.activation_service import ActivationService

logger = logging.getLogger(__name__)


async def handle_activation_completed(data: Dict[str, Any]):
    """
    Handle ACTIVATION_COMPLETED event: distribute incomes for the
    activation transaction in a dedicated session.

    Args:
        data: Event data with 'transactionId' key
    """
    transaction_id = data.get("transactionId")

    if not transaction_id:
        logger.error("ACTIVATION_COMPLETED event missing transactionId")
        return

    logger.info(f"Processing incomes for transaction {transaction_id}")

    session = get_session()

    try:
        service = ActivationService(session)
        result = await service.processTransaction(transaction_id)

        if result.get("success"):
            logger.info(
                f"✓ Incomes processed for transaction {transaction_id}: "
                f"{len(result.get('incomes', []))} incomes, "
                f"total {result.get('totalDistributed', 0)}"
            )
        else:
            logger.warning(
                f"Transaction {transaction_id} not processed: "
                f"{result.get('error', 'Unknown error')}"
            )

    except Exception as e:
        logger.error(
            f"Critical error processing incomes for transaction {transaction_id}: {e}",
            exc_info=True
        )
        session.rollback()

    finally:
        session.close()


def log_income_credited(data: Dict[str, Any]):
    logger.debug(
        f"Income credited: {data.get('incomeType')} {data.get('amount')} "
        f"to {data.get('userId')}"
    )
