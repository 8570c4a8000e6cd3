# tests/test_network_snapshot.py
"""
Tests for the distributor network snapshot and the chain walker.

Run:
    pytest tests/test_network_snapshot.py -v
"""
import types
from datetime import date

import pytest

from mlm_system.config.ranks import Rank
from mlm_system.errors import IntegrityError
from mlm_system.network.snapshot import NetworkSnapshot
from mlm_system.utils.chain_walker import ChainWalker


@pytest.fixture
def chain(build_network):
    """A(1) <- B(2) <- C(3) <- D(4), plus E(5) recruited by A."""
    return build_network([
        (1, None, "Manager"),
        (2, 1, "ETL"),
        (3, 2, "ETT"),
        (4, 3, "Conseiller"),
        (5, 1, "Conseiller"),
    ])


# =============================================================================
# TEST CLASS: Upline
# =============================================================================

class TestUpline:
    """Ancestors, generations and roots."""

    def test_generation_is_path_length(self, chain):
        """
        TEST: Chain A<-B<-C<-D, generation of C relative to A is 2.
        """
        assert chain.generationBetween(3, 1) == 2
        assert chain.generationBetween(4, 1) == 3
        assert chain.generationBetween(4, 5) is None

    def test_ancestors_ordered_sponsor_to_root(self, chain):
        ancestors = chain.getAncestors(4)
        assert [node.distributorId for node in ancestors] == [3, 2, 1]

    def test_root_is_partition_key(self, chain):
        assert chain.getRoot(4).distributorId == 1
        assert chain.getRoot(1).distributorId == 1

    def test_missing_sponsor_is_standalone_root(self, build_network):
        """
        TEST: Sponsor not in snapshot -> node treated as root.
        """
        network = build_network([(7, 99, "ETT")])

        assert network.getAncestors(7) == ()
        assert network.getRoot(7).distributorId == 7

    def test_cycle_raises_integrity_error(self, build_network):
        """
        TEST: Sponsor cycle is reported, never looped on.
        """
        network = build_network([
            (10, 11, "ETT"),
            (11, 10, "ETT"),
            (12, 10, "Conseiller"),
        ])

        with pytest.raises(IntegrityError):
            network.getAncestors(12)

        with pytest.raises(IntegrityError):
            network.getRoot(10)

    def test_self_sponsor_is_a_cycle(self, build_network):
        network = build_network([(20, 20, "ETT")])

        with pytest.raises(IntegrityError):
            network.getAncestors(20)

    def test_unknown_node_raises_key_error(self, chain):
        assert 42 not in chain
        with pytest.raises(KeyError):
            chain.getAncestors(42)


# =============================================================================
# TEST CLASS: Downline
# =============================================================================

class TestDownline:
    """Descendant traversal and subtree counts."""

    def test_descendants_are_lazy(self, chain):
        descendants = chain.getDescendants(1)

        assert isinstance(descendants, types.GeneratorType)
        first_node, first_generation = next(descendants)
        assert (first_node.distributorId, first_generation) == (2, 1)

    def test_descendants_respect_max_depth(self, chain):
        result = {(node.distributorId, generation) for node, generation in chain.getDescendants(1, maxDepth=2)}

        assert result == {(2, 1), (3, 2), (5, 1)}

    def test_cumulative_direct_count(self, chain):
        """
        TEST: Sum of direct recruits over the whole subtree.
        """
        assert chain.cumulativeDirectCount(1) == 4
        assert chain.cumulativeDirectCount(2) == 2
        assert chain.cumulativeDirectCount(4) == 0

    def test_cumulative_count_detects_cycle(self, build_network):
        network = build_network([(10, 11, "ETT"), (11, 10, "ETT")])

        with pytest.raises(IntegrityError):
            network.cumulativeDirectCount(10)

    def test_direct_recruits(self, chain):
        assert [node.distributorId for node in chain.getDirectRecruits(1)] == [2, 5]


# =============================================================================
# TEST CLASS: Promotion history
# =============================================================================

class TestPromotionHistory:
    """Rank attainment lookups."""

    @pytest.fixture
    def network(self, build_network):
        return build_network([
            (1, None, "Manager", {"promotions": [
                (date(2023, 5, 1), "ETT"),
                (date(2024, 2, 1), "ETL"),
                (date(2025, 6, 1), "Manager"),
            ]}),
            (2, 1, "ETT"),
        ])

    def test_rank_attained_on(self, network):
        assert network.rankAttainedOn(1, Rank.ETT) == date(2023, 5, 1)
        assert network.rankAttainedOn(1, Rank.MANAGER) == date(2025, 6, 1)
        assert network.rankAttainedOn(1, Rank.RC) is None

    def test_rank_on_date(self, network):
        assert network.rankOn(1, date(2023, 4, 30)) == Rank.CONSEILLER
        assert network.rankOn(1, date(2024, 12, 31)) == Rank.ETL
        assert network.rankOn(1, date(2026, 1, 1)) == Rank.MANAGER

    def test_no_history(self, network):
        assert network.hasPromotionHistory(2) is False
        assert network.rankOn(2, date(2026, 1, 1)) is None


# =============================================================================
# TEST CLASS: Building from the database
# =============================================================================

class TestFromSession:

    def test_snapshot_from_tables(self, session, add_distributor):
        add_distributor(1, rank="Manager", promotions=[("ETT", date(2024, 1, 1)), ("Manager", date(2025, 1, 1))])
        add_distributor(2, sponsor=1, rank="ett")
        add_distributor(3, sponsor=2, rank="CQ", active=False)

        network = NetworkSnapshot.fromSession(session)

        assert len(network) == 3
        assert network.getNode(2).rank == Rank.ETT
        assert network.getNode(3).rank == Rank.CONSEILLER
        assert network.getNode(3).isActive is False
        assert network.rankAttainedOn(1, Rank.MANAGER) == date(2025, 1, 1)
        assert network.generationBetween(3, 1) == 2


# =============================================================================
# TEST CLASS: ChainWalker
# =============================================================================

class TestChainWalker:

    def test_walk_stops_when_callback_says_so(self, chain):
        visited = []

        def visit(node, generation):
            visited.append((node.distributorId, generation))
            return generation < 2

        processed = ChainWalker(chain).walk_upline(4, visit)

        assert processed == 2
        assert visited == [(3, 1), (2, 2)]

    def test_walk_respects_max_depth(self, chain):
        visited = []

        processed = ChainWalker(chain).walk_upline(
            4, lambda node, generation: visited.append(node.distributorId) or True, max_depth=1
        )

        assert processed == 1
        assert visited == [3]

    def test_ancestor_at(self, chain):
        walker = ChainWalker(chain)
        assert walker.ancestor_at(4, 3).distributorId == 1
        assert walker.ancestor_at(4, 4) is None
