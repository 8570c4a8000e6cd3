# mlm_system/network/snapshot.py
"""
Read-only snapshot of the distributor network.

Nodes live in an arena keyed by distributor id and reference their sponsor by
id only. A snapshot is built once per run and never changes afterwards, so
all derived values (ancestor chains, subtree counts) are memoized.

Missing sponsor -> the node is a standalone root.
Sponsor cycle   -> IntegrityError when the cycle is traversed.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session

from mlm_system.config.ranks import Rank, parse_rank_or_none
from mlm_system.errors import IntegrityError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DistributorNode:
    distributorId: int
    rank: Rank
    sponsorId: Optional[int]
    joinDate: date
    isActive: bool = True
    monthlyPoints: int = 0
    cumulativeQualifiedMonths: int = 0
    # (effectiveDate, newRank) ordered by date
    promotions: Tuple[Tuple[date, Rank], ...] = ()


class NetworkSnapshot:
    """Immutable arena of distributor nodes."""

    def __init__(self, nodes: Iterable[DistributorNode]):
        self._nodes: Dict[int, DistributorNode] = {}
        for node in nodes:
            if node.distributorId in self._nodes:
                raise IntegrityError(
                    f"Distributor {node.distributorId} appears twice in snapshot",
                    node.distributorId
                )
            self._nodes[node.distributorId] = node

        self._children: Dict[int, List[int]] = defaultdict(list)
        for node in self._nodes.values():
            if node.sponsorId is None:
                continue
            if node.sponsorId not in self._nodes:
                logger.warning(
                    f"Sponsor {node.sponsorId} of distributor {node.distributorId} "
                    f"not in snapshot, treating as root"
                )
                continue
            self._children[node.sponsorId].append(node.distributorId)

        for children in self._children.values():
            children.sort()

        self._ancestorCache: Dict[int, Tuple[DistributorNode, ...]] = {}
        self._directCountCache: Dict[int, int] = {}

    # ═══════════════════════════════════════════════════════════════════════
    # BUILDING
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    def fromSession(cls, session: Session) -> "NetworkSnapshot":
        """Build snapshot from the distributors and rank_promotions tables."""
        from models.distributor import Distributor, RankPromotion

        promotionsByNode: Dict[int, List[Tuple[date, Rank]]] = defaultdict(list)
        for promotion in session.query(RankPromotion).order_by(
                RankPromotion.effectiveDate, RankPromotion.promotionID
        ).all():
            rank = parse_rank_or_none(promotion.newRank)
            if rank is None:
                continue
            promotionsByNode[promotion.distributorID].append((promotion.effectiveDate, rank))

        nodes = []
        for distributor in session.query(Distributor).all():
            rank = parse_rank_or_none(distributor.rank) or Rank.CONSEILLER
            nodes.append(DistributorNode(
                distributorId=distributor.distributorID,
                rank=rank,
                sponsorId=distributor.sponsorID,
                joinDate=distributor.joinDate,
                isActive=bool(distributor.isActive),
                monthlyPoints=distributor.monthlyPoints or 0,
                cumulativeQualifiedMonths=distributor.cumulativeQualifiedMonths or 0,
                promotions=tuple(promotionsByNode.get(distributor.distributorID, ())),
            ))

        snapshot = cls(nodes)
        logger.info(f"Network snapshot built: {len(snapshot)} distributors")
        return snapshot

    # ═══════════════════════════════════════════════════════════════════════
    # LOOKUPS
    # ═══════════════════════════════════════════════════════════════════════

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, nodeId) -> bool:
        return nodeId in self._nodes

    @property
    def nodeIds(self) -> List[int]:
        return sorted(self._nodes)

    def getNode(self, nodeId: int) -> Optional[DistributorNode]:
        return self._nodes.get(nodeId)

    def _require(self, nodeId: int) -> DistributorNode:
        node = self._nodes.get(nodeId)
        if node is None:
            raise KeyError(f"Distributor {nodeId} not in snapshot")
        return node

    def getDirectRecruits(self, nodeId: int) -> List[DistributorNode]:
        self._require(nodeId)
        return [self._nodes[childId] for childId in self._children.get(nodeId, [])]

    # ═══════════════════════════════════════════════════════════════════════
    # UPLINE
    # ═══════════════════════════════════════════════════════════════════════

    def getAncestors(self, nodeId: int) -> Tuple[DistributorNode, ...]:
        """
        Ancestors ordered sponsor -> root.
        ancestors[i] is generation i + 1 relative to the node.

        Raises:
            KeyError: Unknown node
            IntegrityError: Sponsor cycle on the path
        """
        if nodeId in self._ancestorCache:
            return self._ancestorCache[nodeId]

        node = self._require(nodeId)
        chain = []
        visited = {nodeId}
        current = node

        while current.sponsorId is not None and current.sponsorId in self._nodes:
            if current.sponsorId in visited:
                logger.error(f"Sponsor cycle detected at distributor {current.sponsorId}")
                raise IntegrityError(
                    f"Sponsor cycle through distributor {current.sponsorId}",
                    current.sponsorId
                )
            visited.add(current.sponsorId)
            current = self._nodes[current.sponsorId]
            chain.append(current)

        ancestors = tuple(chain)
        self._ancestorCache[nodeId] = ancestors
        return ancestors

    def getRoot(self, nodeId: int) -> DistributorNode:
        """Topmost ancestor (the node itself for roots). Partition key of a run."""
        ancestors = self.getAncestors(nodeId)
        return ancestors[-1] if ancestors else self._nodes[nodeId]

    def generationBetween(self, descendantId: int, ancestorId: int) -> Optional[int]:
        """Path length from descendant up to ancestor, None if not in the upline."""
        for index, ancestor in enumerate(self.getAncestors(descendantId)):
            if ancestor.distributorId == ancestorId:
                return index + 1
        return None

    # ═══════════════════════════════════════════════════════════════════════
    # DOWNLINE
    # ═══════════════════════════════════════════════════════════════════════

    def getDescendants(
            self,
            nodeId: int,
            maxDepth: Optional[int] = None
    ) -> Iterator[Tuple[DistributorNode, int]]:
        """
        Lazily yield (node, generation) for the subtree, depth-first.

        Raises:
            IntegrityError: Sponsor cycle inside the subtree
        """
        self._require(nodeId)
        visited = {nodeId}
        stack = [(childId, 1) for childId in reversed(self._children.get(nodeId, []))]

        while stack:
            childId, generation = stack.pop()
            if childId in visited:
                raise IntegrityError(f"Sponsor cycle through distributor {childId}", childId)
            visited.add(childId)

            yield self._nodes[childId], generation

            if maxDepth is not None and generation >= maxDepth:
                continue
            for grandChildId in reversed(self._children.get(childId, [])):
                stack.append((grandChildId, generation + 1))

    def cumulativeDirectCount(self, nodeId: int) -> int:
        """
        Sum of direct recruits over the whole subtree (subtree size minus the node).
        Post-order accumulation, memoized per snapshot.
        """
        self._require(nodeId)
        if nodeId in self._directCountCache:
            return self._directCountCache[nodeId]

        inProgress = set()
        stack = [(nodeId, False)]

        while stack:
            currentId, childrenDone = stack.pop()
            if currentId in self._directCountCache:
                continue

            children = self._children.get(currentId, [])
            if childrenDone:
                inProgress.discard(currentId)
                self._directCountCache[currentId] = sum(
                    1 + self._directCountCache[childId] for childId in children
                )
                continue

            if currentId in inProgress:
                raise IntegrityError(f"Sponsor cycle through distributor {currentId}", currentId)
            inProgress.add(currentId)

            stack.append((currentId, True))
            for childId in children:
                if childId in inProgress:
                    raise IntegrityError(f"Sponsor cycle through distributor {childId}", childId)
                if childId not in self._directCountCache:
                    stack.append((childId, False))

        return self._directCountCache[nodeId]

    # ═══════════════════════════════════════════════════════════════════════
    # PROMOTION HISTORY
    # ═══════════════════════════════════════════════════════════════════════

    def hasPromotionHistory(self, nodeId: int) -> bool:
        return bool(self._require(nodeId).promotions)

    def rankAttainedOn(self, nodeId: int, rank: Rank) -> Optional[date]:
        """First date the node was promoted to rank or above, None if never recorded."""
        for effectiveDate, newRank in self._require(nodeId).promotions:
            if newRank >= rank:
                return effectiveDate
        return None

    def rankOn(self, nodeId: int, onDate: date) -> Optional[Rank]:
        """
        Rank held on a date according to promotion history.

        Returns:
            Latest promoted rank effective on or before the date,
            CONSEILLER if every promotion is later, None without history
        """
        node = self._require(nodeId)
        if not node.promotions:
            return None

        held = Rank.CONSEILLER
        for effectiveDate, newRank in node.promotions:
            if effectiveDate > onDate:
                break
            held = newRank
        return held
