# mlm_system/utils/chain_walker.py
"""
MLM chain walking utilities over a network snapshot.
Cycles surface as IntegrityError from the snapshot, never as infinite loops.
"""
from typing import Callable, Optional
import logging

from mlm_system.network.snapshot import NetworkSnapshot, DistributorNode

logger = logging.getLogger(__name__)


class ChainWalker:
    """Walk upline chains of a snapshot with per-level callbacks."""

    def __init__(self, network: NetworkSnapshot):
        self.network = network

    def walk_upline(
            self,
            start_id: int,
            callback: Callable[[DistributorNode, int], bool],
            max_depth: Optional[int] = 50
    ) -> int:
        """
        Walk up the sponsor chain, calling callback for each ancestor.

        Args:
            start_id: Distributor the walk starts from (not visited itself)
            callback: Function(node, generation) -> continue_walking (bool)
            max_depth: Maximum generation visited, None for the whole chain

        Returns:
            Number of ancestors processed

        Example:
            def collect(node, generation):
                print(f"Generation {generation}: {node.distributorId}")
                return True  # Continue walking

            walker.walk_upline(sellerId, collect, max_depth=3)
        """
        processed = 0

        for index, ancestor in enumerate(self.network.getAncestors(start_id)):
            generation = index + 1
            if max_depth is not None and generation > max_depth:
                break

            should_continue = callback(ancestor, generation)
            processed += 1

            if not should_continue:
                break

        return processed

    def ancestor_at(self, start_id: int, generation: int) -> Optional[DistributorNode]:
        """Ancestor exactly `generation` levels up, None if the chain is shorter."""
        ancestors = self.network.getAncestors(start_id)
        if generation < 1 or generation > len(ancestors):
            return None
        return ancestors[generation - 1]

