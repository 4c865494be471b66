# rankcycle/mlm_system/utils/chain_walker.py
"""
Safe MLM chain walking utilities.
Prevents infinite loops and validates chain integrity.
"""
from typing import Optional, Callable, List
from sqlalchemy.orm import Session
import logging

from models.user import User

logger = logging.getLogger(__name__)


class ChainWalker:
    """
    Safe utilities for walking sponsor (upline) chains.
    The root account is the one user without a sponsor.
    """

    def __init__(self, session: Session):
        self.session = session

    def _get_user(self, user_id: str) -> Optional[User]:
        return self.session.query(User).filter_by(userID=user_id).first()

    def walk_upline(
            self,
            start_user: User,
            callback: Callable[[User, int], bool],
            max_depth: int = 50
    ) -> int:
        """
        Safely walk up the sponsor chain, calling callback for each user.

        Args:
            start_user: Starting user
            callback: Function(user, level) -> continue_walking (bool)
            max_depth: Maximum depth to prevent runaway loops

        Returns:
            Number of users processed
        """
        current_user = start_user
        level = 1
        processed = 0
        visited = {start_user.userID}

        while current_user.sponsorID and level <= max_depth:
            if current_user.sponsorID in visited:
                logger.error(f"Cycle detected at user {current_user.userID}")
                break

            sponsor = self._get_user(current_user.sponsorID)

            if not sponsor:
                logger.warning(
                    f"Sponsor not found: userID={current_user.sponsorID} "
                    f"for user {current_user.userID}"
                )
                break

            visited.add(sponsor.userID)

            should_continue = callback(sponsor, level)
            processed += 1

            if not should_continue:
                break

            current_user = sponsor
            level += 1

        return processed

    def get_upline_chain(self, user: User, max_depth: int = 50) -> List[User]:
        """
        Get list of all users in upline chain.

        Returns:
            List of users from immediate sponsor to root
        """
        chain = []

        def collect(upline_user, level):
            chain.append(upline_user)
            return True  # Continue

        self.walk_upline(user, collect, max_depth)
        return chain

    def get_upline_ids(self, user_id: str, levels: int) -> List[str]:
        """
        Sponsor ids above user, nearest first, at most `levels` entries.

        Stops when a user has no sponsor (root reached) or does not exist.
        A sponsor id is collected before its document is read, so a dangling
        sponsor pointer ends the chain as its last entry.
        """
        chain: List[str] = []
        visited = {user_id}
        current_id = user_id

        for _ in range(levels):
            current_user = self._get_user(current_id)
            if not current_user:
                break

            sponsor_id = current_user.sponsorID
            if not sponsor_id:
                break

            if sponsor_id in visited:
                logger.error(f"Cycle detected in sponsor chain of user {user_id} at {sponsor_id}")
                break

            chain.append(sponsor_id)
            visited.add(sponsor_id)
            current_id = sponsor_id

        return chain
