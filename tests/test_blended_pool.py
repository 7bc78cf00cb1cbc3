"""Tests for the blended pool: registry, compensation, harvest and recall."""
import pytest

from lendpool.errors import BadState, InvalidAmount, InvalidAsset, NotAuthorized, TokensLocked, UnknownPool

from conftest import ADMIN, BORROWER, GOVERNOR, LOCKUP


def drain_and_unlock(regional, protocol, fund, deposit=1_000, borrow=800):
    fund("alice")
    regional.deposit("alice", deposit)
    regional.borrow(BORROWER, borrow)
    protocol.advance(LOCKUP)


class TestRegistry:

    def test_pools_keep_registration_order(self, factory, regional, blended, pool_config):
        factory.create_regional_pool(ADMIN, "USDC", pool_config, pool_id="regional_b")
        blended.add_pool(ADMIN, "regional_b")
        blended.add_pool(ADMIN, regional.pool_id)

        assert blended.pools == ["regional_b", "regional_a"]

        blended.remove_pool(ADMIN, "regional_b")
        assert blended.pools == ["regional_a"]
        assert not blended.is_registered("regional_b")

    def test_duplicate_registration_fails(self, regional, blended):
        blended.add_pool(ADMIN, regional.pool_id)
        with pytest.raises(BadState):
            blended.add_pool(ADMIN, regional.pool_id)

    def test_remove_unregistered_pool(self, regional, blended):
        with pytest.raises(UnknownPool):
            blended.remove_pool(ADMIN, regional.pool_id)

    def test_only_admin_registers(self, regional, blended):
        with pytest.raises(NotAuthorized):
            blended.add_pool("mallory", regional.pool_id)
        assert blended.pools == []

    def test_registration_requires_same_asset(self, factory, protocol, blended):
        protocol.add_asset(GOVERNOR, "DAI")
        factory.create_regional_pool(ADMIN, "DAI", pool_id="dai_pool")
        with pytest.raises(InvalidAsset):
            blended.add_pool(ADMIN, "dai_pool")


class TestCompensation:

    def test_shortfall_is_covered_by_blended_pool(self, backed, protocol, token, fund):
        regional, blended = backed
        drain_and_unlock(regional, protocol, fund)

        receipt = regional.withdraw("alice", 1_000)

        assert receipt.status == "compensated"
        assert receipt.paid
        assert receipt.compensation == 800
        assert token.balance_of("alice") == 10_000
        assert regional.pending("withdrawal", "alice") == 0
        assert regional.balance_of(blended.address) == 800
        assert regional.total_supply == 800
        assert blended.investments == {regional.pool_id: 800}
        assert blended.locker.balance() == 4_200
        assert regional.log.of_type("COMPENSATED")[-1].amount == 800
        assert regional.check_invariants() == []
        assert blended.check_invariants() == []

    def test_unregistered_pool_falls_back_to_pending(self, regional, blended, protocol, fund):
        regional.set_blended_pool(ADMIN, blended.pool_id)
        fund("lp")
        blended.deposit("lp", 5_000)
        drain_and_unlock(regional, protocol, fund)

        receipt = regional.withdraw("alice", 1_000)

        assert receipt.status == "pending"
        assert regional.pending("withdrawal", "alice") == 1_000
        assert blended.locker.balance() == 5_000
        assert blended.investments == {}

    def test_thin_blended_pool_falls_back_to_pending(self, backed, protocol, fund):
        regional, blended = backed
        drain_and_unlock(regional, protocol, fund, deposit=10_000, borrow=9_000)

        receipt = regional.withdraw("alice", 10_000)

        assert receipt.status == "pending"
        assert regional.pending("withdrawal", "alice") == 10_000
        assert blended.locker.balance() == 5_000

    def test_conclude_uses_compensation_once_blended_is_funded(self, regional, blended, protocol, token, fund):
        regional.set_blended_pool(ADMIN, blended.pool_id)
        blended.add_pool(ADMIN, regional.pool_id)
        drain_and_unlock(regional, protocol, fund)
        assert regional.withdraw("alice", 1_000).status == "pending"

        fund("lp", amount=5_000)
        blended.deposit("lp", 5_000)

        assert regional.conclude_pending_withdrawal(ADMIN, "alice") == 1_000
        assert token.balance_of("alice") == 10_000
        assert blended.investments[regional.pool_id] == 800
        assert regional.receipts.tail(1)[0].compensation == 800

    def test_request_assets_requires_registration(self, regional, blended, fund):
        fund("lp")
        blended.deposit("lp", 1_000)
        with pytest.raises(NotAuthorized):
            blended.request_assets(regional.address, 100)
        with pytest.raises(NotAuthorized):
            blended.request_assets("mallory", 100)
        assert blended.locker.balance() == 1_000


class TestHarvestAndRecall:

    def test_harvest_moves_regional_reward_into_blended_locker(self, backed, protocol, token, fund):
        regional, blended = backed
        drain_and_unlock(regional, protocol, fund)
        regional.withdraw("alice", 1_000)
        token.mint(BORROWER, 200)
        assert regional.repay(BORROWER, 1_000) == 200
        assert regional.owed("reward", blended.address) == 200

        assert blended.harvest(ADMIN, regional.pool_id) is True
        assert blended.locker.balance() == 4_400
        assert regional.owed("reward", blended.address) == 0

        blended.distribute_yields(ADMIN, 200)
        assert blended.owed("yield", "lp") == 199
        assert blended.channels["yield"].dust() == 1

    def test_recall_withdraws_invested_liquidity(self, backed, protocol, fund):
        regional, blended = backed
        drain_and_unlock(regional, protocol, fund)
        regional.withdraw("alice", 1_000)
        regional.repay(BORROWER, 800)

        with pytest.raises(InvalidAmount):
            blended.recall(ADMIN, regional.pool_id, 801)

        protocol.advance(LOCKUP)
        receipt = blended.recall(ADMIN, regional.pool_id, 800)

        assert receipt.status == "paid"
        assert receipt.compensation == 0
        assert blended.locker.balance() == 5_000
        assert blended.investments == {}
        assert regional.total_supply == 0

    def test_recall_respects_regional_lockup(self, backed, protocol, fund):
        regional, blended = backed
        drain_and_unlock(regional, protocol, fund)
        regional.withdraw("alice", 1_000)
        regional.repay(BORROWER, 800)

        with pytest.raises(TokensLocked):
            blended.recall(ADMIN, regional.pool_id, 800)
        assert blended.investments == {regional.pool_id: 800}
