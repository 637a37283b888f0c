# matrix_system/utils/chain_walker.py
"""
Safe tree walking utilities.
Members reference parents by id (arena storage); walks guard against
corrupted chains with a visited set and the depth stored on each member
at insert time. Walks never consult MAX_TREE_DEPTH.
"""
from typing import Callable, Dict, Iterator, List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from models.member import Member
from matrix_system.errors import CycleDetected

logger = logging.getLogger(__name__)


class ChainWalker:
    """
    Safe utilities for walking upline/downline chains.
    Raises CycleDetected instead of looping on corrupted data.
    """

    def __init__(self, session: Session):
        self.session = session

    def walk_upline(
            self,
            start_member: Member,
            callback: Callable[[Member, int], bool]
    ) -> int:
        """
        Walk up the parent chain, calling callback for each ancestor.

        Args:
            start_member: Starting member (not passed to callback)
            callback: Function(member, level) -> continue_walking (bool)

        Returns:
            Number of ancestors processed

        Raises:
            CycleDetected: If the chain revisits a member or is longer than
                           start_member.depth
        """
        current = start_member
        level = 1
        processed = 0
        visited = {start_member.memberID}

        while current.parentID is not None:
            if current.parentID in visited or level > start_member.depth:
                logger.error(
                    f"Cycle detected walking upline from member {start_member.memberID} "
                    f"at parent {current.parentID}"
                )
                raise CycleDetected(
                    f"Parent chain of member {start_member.memberID} revisits "
                    f"member {current.parentID}"
                )

            parent = self.session.get(Member, current.parentID)
            if parent is None:
                logger.warning(
                    f"Parent not found: memberID={current.parentID} "
                    f"for member {current.memberID}"
                )
                break

            visited.add(parent.memberID)
            processed += 1

            if not callback(parent, level):
                break

            current = parent
            level += 1

        return processed

    def get_upline_chain(self, member: Member) -> List[Member]:
        """
        Get list of all ancestors.

        Returns:
            List of members from immediate parent to root
        """
        chain = []

        def collect(upline_member, level):
            chain.append(upline_member)
            return True

        self.walk_upline(member, collect)
        return chain

    def get_upline_ids(self, member: Member) -> List[int]:
        return [ancestor.memberID for ancestor in self.get_upline_chain(member)]

    def generations_between(self, ancestor: Member, descendant: Member) -> Optional[int]:
        """
        Count generations from ancestor down to descendant.

        Returns:
            Generation distance (>= 1), or None if ancestor is not an
            ancestor of descendant
        """
        distance = descendant.depth - ancestor.depth
        if distance < 1:
            return None

        found = [False]

        def check(upline_member, level):
            if level == distance:
                found[0] = upline_member.memberID == ancestor.memberID
                return False
            return True

        self.walk_upline(descendant, check)
        return distance if found[0] else None

    def iter_downline(
            self,
            member: Member,
            max_levels: Optional[int] = None
    ) -> Iterator[Tuple[Member, int]]:
        """
        Yield (descendant, level) breadth-first, level 1 being direct recruits.

        Args:
            member: Subtree root (not yielded)
            max_levels: Stop below this level (None walks the whole subtree)

        Raises:
            CycleDetected: If a member is reached twice or the subtree is
                           deeper than any recorded member depth
        """
        visited = {member.memberID}
        frontier = [member.memberID]
        level = 0

        deepest = self.session.query(func.max(Member.depth)).scalar() or 0
        maxLevels = deepest - member.depth

        while frontier:
            level += 1
            if max_levels is not None and level > max_levels:
                return
            if level > maxLevels + 1:
                raise CycleDetected(
                    f"Downline of member {member.memberID} is deeper than recorded depths"
                )

            children = self.session.query(Member).filter(
                Member.parentID.in_(frontier)
            ).order_by(Member.memberID).all()

            frontier = []
            for child in children:
                if child.memberID in visited:
                    raise CycleDetected(f"Member {child.memberID} reached twice in downline")
                visited.add(child.memberID)
                frontier.append(child.memberID)
                yield child, level

    def count_downline(self, member: Member) -> Dict[str, int]:
        """
        Full recount of member's subtree (breadth-first, level by level).
        Used for rebuilds and verification, never on the event path.

        Returns:
            Dict with teamSize, activeTeamCount, activeRecruitsCount
        """
        counts = {"teamSize": 0, "activeTeamCount": 0, "activeRecruitsCount": 0}

        for child, level in self.iter_downline(member):
            counts["teamSize"] += 1
            if child.isActive:
                counts["activeTeamCount"] += 1
                if level == 1:
                    counts["activeRecruitsCount"] += 1

        return counts
