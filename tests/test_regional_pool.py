"""
Tests for RegionalPool entry points.

Covers deposits and their bounds, lockup, withdrawals with and without
liquidity, reward claims that fall back to the settlement queue, borrowing,
repayment, write-downs and all-or-nothing rollback.
"""
import pytest

from lendpool.errors import (
    BadState, BelowMinimum, ExceedsCapacity, InsufficientBalance, InsufficientLiquidity,
    InsufficientRepayment, NotAuthorized, ProtocolPaused, TokensLocked, ZeroSupply,
)

from conftest import ADMIN, BORROWER, GOVERNOR, LOCKUP


def unlock(protocol):
    protocol.advance(LOCKUP)


# ============================================================================
# Deposits
# ============================================================================

class TestDeposit:

    def test_deposit_mints_shares_one_to_one(self, regional, token, fund):
        fund("alice")
        regional.deposit("alice", 1_500)

        assert regional.balance_of("alice") == 1_500
        assert regional.total_supply == 1_500
        assert regional.locker.balance() == 1_500
        assert token.balance_of("alice") == 8_500
        assert [e.event_type for e in regional.log.tail(2)] == ["BALANCE_UPDATED", "DEPOSIT"]

    def test_deposit_below_minimum_on_empty_pool(self, regional, token, fund):
        fund("alice")

        with pytest.raises(BelowMinimum) as exc:
            regional.deposit("alice", 99)

        assert exc.value.minimum == 100
        assert regional.balance_of("alice") == 0
        assert regional.total_supply == 0
        assert regional.locker.balance() == 0
        assert token.balance_of("alice") == 10_000

    def test_small_top_up_allowed_once_minimum_is_met(self, regional, fund):
        fund("alice", "bob")
        regional.deposit("alice", 100)
        regional.deposit("bob", 1)
        assert regional.balance_of("bob") == 1

    def test_deposit_over_capacity(self, regional, fund):
        fund("whale", amount=2_000_000)
        regional.deposit("whale", 999_000)
        with pytest.raises(ExceedsCapacity):
            regional.deposit("whale", 1_001)
        assert regional.total_supply == 999_000

    def test_deposit_without_funds(self, regional, fund):
        fund("alice", amount=50)
        with pytest.raises(InsufficientBalance):
            regional.deposit("alice", 500)

    def test_deposit_into_deactivated_pool(self, regional, fund):
        fund("alice")
        regional.deactivate(ADMIN)
        with pytest.raises(BadState):
            regional.deposit("alice", 500)

    def test_paused_protocol_blocks_operations(self, regional, protocol, fund):
        fund("alice")
        protocol.set_paused(GOVERNOR, True)
        with pytest.raises(ProtocolPaused):
            regional.deposit("alice", 500)
        protocol.set_paused(GOVERNOR, False)
        regional.deposit("alice", 500)

    def test_only_governor_pauses(self, protocol):
        with pytest.raises(NotAuthorized):
            protocol.set_paused(ADMIN, True)


# ============================================================================
# Lockup and withdrawals
# ============================================================================

class TestWithdraw:

    def test_withdraw_before_lockup_fails(self, regional, protocol, fund):
        fund("alice")
        regional.deposit("alice", 1_000)
        protocol.advance(LOCKUP - 1)

        with pytest.raises(TokensLocked):
            regional.withdraw("alice", 1_000)
        assert regional.balance_of("alice") == 1_000

    def test_top_up_extends_lock_by_weight(self, regional, protocol, fund):
        fund("alice")
        regional.deposit("alice", 1_000)
        protocol.advance(10)
        regional.deposit("alice", 1_000)

        assert regional.deposit_dates["alice"] == 5
        protocol.advance(4)
        assert regional.unlocked_to_withdraw("alice") == 0
        protocol.advance(1)
        assert regional.unlocked_to_withdraw("alice") == 2_000

    def test_deposit_then_withdraw_round_trip(self, regional, protocol, token, fund):
        fund("alice")
        regional.deposit("alice", 2_500)
        unlock(protocol)

        receipt = regional.withdraw("alice", 2_500)

        assert receipt.status == "paid"
        assert receipt.amount == 2_500
        assert token.balance_of("alice") == 10_000
        assert regional.total_supply == 0

    def test_withdraw_more_than_balance(self, regional, protocol, fund):
        fund("alice")
        regional.deposit("alice", 500)
        unlock(protocol)
        with pytest.raises(InsufficientBalance):
            regional.withdraw("alice", 501)

    def test_shortfall_without_backstop_is_queued(self, regional, protocol, token, fund):
        fund("alice")
        regional.deposit("alice", 1_000)
        regional.borrow(BORROWER, 600)
        unlock(protocol)

        receipt = regional.withdraw("alice", 1_000)

        assert receipt.status == "pending"
        assert not receipt.paid
        assert regional.balance_of("alice") == 0
        assert regional.pending("withdrawal", "alice") == 1_000
        assert token.balance_of("alice") == 9_000
        assert regional.log.of_type("PENDING_WITHDRAWAL")[-1].amount == 1_000

        token.mint(BORROWER, 600)
        regional.repay(BORROWER, 600)
        assert regional.conclude_pending_withdrawal(ADMIN, "alice") == 1_000
        assert token.balance_of("alice") == 10_000
        assert regional.pending("withdrawal", "alice") == 0

    def test_losses_reduce_payout(self, regional, protocol, token, fund):
        fund("alice", "bob")
        regional.deposit("alice", 1_000)
        regional.deposit("bob", 1_000)
        regional.borrow(BORROWER, 1_000)
        regional.write_down(ADMIN, 500)
        unlock(protocol)

        receipt = regional.withdraw("alice", 1_000)

        assert receipt.loss == 250
        assert receipt.amount == 750
        assert token.balance_of("alice") == 9_750
        assert regional.principal_outstanding == 500
        assert regional.owed("loss", "bob") == 250

    def test_distributed_losses_are_netted_once(self, regional, protocol, token, fund):
        fund("alice")
        regional.deposit("alice", 1_024)
        regional.distribute_losses(ADMIN, 256)
        assert regional.owed("loss", "alice") == 256
        unlock(protocol)

        receipt = regional.withdraw("alice", 512)

        assert receipt.loss == 256
        assert receipt.amount == 256
        assert regional.owed("loss", "alice") == 0
        assert regional.withdraw("alice", 512).loss == 0
        assert token.balance_of("alice") == 10_000 - 256

    def test_transfer_blocked_while_losses_are_unrecognized(self, regional, protocol, token, fund):
        fund("alice", "carol")
        regional.deposit("alice", 1_000)
        regional.deposit("carol", 1_000)
        regional.borrow(BORROWER, 1_000)
        regional.write_down(ADMIN, 1_000)
        unlock(protocol)

        with pytest.raises(BadState):
            regional.transfer("alice", "alice2", 1_000)
        assert regional.balance_of("alice2") == 0
        assert regional.owed("loss", "alice") == 500

        # netting the loss through a withdrawal frees the rest of the shares
        assert regional.withdraw("alice", 500).loss == 500
        regional.transfer("alice", "alice2", 500)
        assert regional.owed("loss", "alice2") == 0

        receipt = regional.withdraw("carol", 1_000)
        assert receipt.status == "paid"
        assert receipt.loss == 500
        assert token.balance_of("carol") == 9_500
        assert regional.locker.balance() == regional.balance_of("alice2") == 500

    def test_residual_loss_does_not_follow_a_fresh_deposit(self, regional, protocol, token, fund):
        fund("alice")
        regional.deposit("alice", 1_024)
        regional.distribute_losses(ADMIN, 1_536)
        unlock(protocol)

        receipt = regional.withdraw("alice", 1_024)

        assert receipt.loss == 1_024
        assert receipt.amount == 0
        assert regional.channels["loss"].owed("alice") == 0

        regional.deposit("alice", 1_000)
        assert regional.owed("loss", "alice") == 0
        assert token.balance_of("alice") == 10_000 - 1_024 - 1_000

    def test_share_transfer_respects_lockup(self, regional, protocol, fund):
        fund("alice")
        regional.deposit("alice", 1_000)
        with pytest.raises(TokensLocked):
            regional.transfer("alice", "bob", 100)
        unlock(protocol)
        regional.transfer("alice", "bob", 100)
        assert regional.balance_of("bob") == 100
        assert regional.deposit_dates["bob"] == protocol.now


# ============================================================================
# Rewards
# ============================================================================

class TestRewards:

    def test_rewards_split_proportionally(self, regional, token, fund):
        fund("alice", "bob", ADMIN)
        regional.deposit("alice", 100)
        regional.deposit("bob", 1_000)
        regional.distribute_rewards(ADMIN, 1_000)

        assert regional.claim_reward("alice") is True
        assert regional.claim_reward("bob") is True
        assert token.balance_of("alice") == 10_000 - 100 + 90
        assert token.balance_of("bob") == 10_000 - 1_000 + 909
        assert regional.channels["reward"].dust() == 1

    def test_claim_without_liquidity_goes_pending(self, regional, token, fund):
        fund("alice", ADMIN)
        regional.deposit("alice", 1_000)
        regional.borrow(BORROWER, 1_000)
        regional.distribute_rewards(ADMIN, 1_000)
        assert regional.locker.balance() == 0

        assert regional.claim_reward("alice") is False
        assert regional.channels["reward"].recognized.get("alice", 0) == 0
        assert regional.pending("reward", "alice") == 1_000
        assert token.balance_of("alice") == 9_000

        # nothing new accrued: the entry is not doubled
        assert regional.claim_reward("alice") is False
        assert regional.pending("reward", "alice") == 1_000

        with pytest.raises(InsufficientLiquidity):
            regional.conclude_pending_reward(ADMIN, "alice")
        assert regional.pending("reward", "alice") == 1_000

        regional.admin_deposit(ADMIN, 1_000)
        assert regional.conclude_pending_reward(ADMIN, "alice") == 1_000
        assert regional.pending("reward", "alice") == 0
        assert token.balance_of("alice") == 10_000
        assert regional.owed("reward", "alice") == 0

    def test_further_claims_increment_pending(self, regional, fund):
        fund("alice")
        regional.deposit("alice", 1_024)
        regional.borrow(BORROWER, 1_024)
        regional.distribute_rewards(ADMIN, 1_024)
        regional.claim_reward("alice")
        regional.distribute_rewards(ADMIN, 128)

        assert regional.claim_reward("alice") is False
        assert regional.pending("reward", "alice") == 1_152

    def test_only_admin_concludes(self, regional, fund):
        fund("alice")
        regional.deposit("alice", 1_000)
        regional.borrow(BORROWER, 1_000)
        regional.distribute_rewards(ADMIN, 10)
        regional.claim_reward("alice")
        with pytest.raises(NotAuthorized):
            regional.conclude_pending_reward("alice", "alice")

    def test_yield_channel_is_separate(self, regional, token, fund):
        fund("alice")
        regional.deposit("alice", 1_024)
        regional.distribute_yields(ADMIN, 40)
        assert regional.claimable("reward", "alice") == 0
        assert regional.claim_yield("alice") is True
        assert token.balance_of("alice") == 10_000 - 1_024 + 40

    def test_distribution_requires_admin_and_supply(self, regional):
        with pytest.raises(NotAuthorized):
            regional.distribute_rewards("mallory", 10)
        with pytest.raises(ZeroSupply):
            regional.distribute_rewards(ADMIN, 10)


# ============================================================================
# Borrowing
# ============================================================================

class TestBorrowing:

    def test_only_borrower_draws(self, regional, fund):
        fund("alice")
        regional.deposit("alice", 1_000)
        with pytest.raises(NotAuthorized):
            regional.borrow("alice", 10)

    def test_borrow_beyond_liquidity_is_a_hard_failure(self, regional, token, fund):
        fund("alice")
        regional.deposit("alice", 1_000)
        with pytest.raises(InsufficientLiquidity):
            regional.borrow(BORROWER, 1_001)
        assert regional.principal_outstanding == 0
        assert token.balance_of(BORROWER) == 0

    def test_repay_must_cover_principal(self, regional, token, fund):
        fund("alice")
        regional.deposit("alice", 1_000)
        regional.borrow(BORROWER, 800)
        with pytest.raises(InsufficientRepayment):
            regional.repay(BORROWER, 799)
        assert regional.principal_outstanding == 800

    def test_repay_excess_becomes_reward(self, regional, token, fund):
        fund("alice", "bob")
        regional.deposit("alice", 1_024)
        regional.deposit("bob", 3_072)
        regional.borrow(BORROWER, 2_000)
        token.mint(BORROWER, 512)

        assert regional.repay(BORROWER, 2_512) == 512
        assert regional.principal_outstanding == 0
        assert regional.owed("reward", "alice") == 128
        assert regional.owed("reward", "bob") == 384

    def test_failed_repay_rolls_back_everything(self, regional, protocol, token, fund):
        fund("alice")
        regional.deposit("alice", 1_000)
        regional.borrow(BORROWER, 500)
        unlock(protocol)
        regional.withdraw("alice", 1_000)
        token.mint(BORROWER, 100)
        events = len(regional.log)

        # no shares left to receive the excess
        with pytest.raises(ZeroSupply):
            regional.repay(BORROWER, 600)

        assert regional.principal_outstanding == 500
        assert token.balance_of(BORROWER) == 600
        assert regional.locker.balance() == 500
        assert len(regional.log) == events

    def test_deactivate_requires_settled_loans(self, regional, fund):
        fund("alice")
        regional.deposit("alice", 1_000)
        regional.borrow(BORROWER, 100)
        with pytest.raises(BadState):
            regional.deactivate(ADMIN)
        assert regional.state == "active"


class TestGuards:

    def test_reentrant_call_is_rejected(self, regional, fund):
        fund("alice")
        with pytest.raises(BadState):
            with regional._operation("outer"):
                regional.deposit("alice", 500)
        assert regional.total_supply == 0
        regional.deposit("alice", 500)
        assert regional.total_supply == 500

    def test_blended_pool_set_once(self, regional, blended):
        regional.set_blended_pool(ADMIN, blended.pool_id)
        with pytest.raises(BadState):
            regional.set_blended_pool(ADMIN, blended.pool_id)
        assert regional.blended_pool_id == blended.pool_id

    def test_set_blended_pool_rejects_regional_target(self, factory, regional, pool_config):
        second = factory.create_regional_pool(ADMIN, "USDC", pool_config, pool_id="regional_b")
        with pytest.raises(BadState):
            regional.set_blended_pool(ADMIN, second.pool_id)
        assert regional.blended_pool_id is None
