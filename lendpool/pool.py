from __future__ import annotations
from contextlib import contextmanager
from typing import Dict, Iterator, List, Literal, Optional
import logging

from .config import PoolConfig
from .core import (
    Channel, DistributionAccumulator, Event, EventLog, Locker, ReceiptStore, SettlementQueue,
    SettlementReceipt, ShareLedger, Token, require_amount,
)
from .errors import (
    BadState, BelowMinimum, ExceedsCapacity, InsufficientBalance, InsufficientLiquidity,
    InsufficientRepayment, InvalidAmount, InvalidAsset, NotAuthorized, TokensLocked, UnknownPool,
)
from .globals import ProtocolGlobals
from .transaction import Transaction

logger = logging.getLogger(__name__)

PoolState = Literal["active", "deactivated"]
PoolKind = Literal["regional", "blended"]

CHANNELS = ("reward", "yield", "loss")


class BasePool:
    kind: PoolKind = "regional"

    def __init__(self, pool_id: str, admin_id: str, token: Token, globals_: ProtocolGlobals,
                 config: PoolConfig, directory: Optional[Dict[str, "BasePool"]] = None,
                 log: Optional[EventLog] = None) -> None:
        self.pool_id = pool_id
        self.admin_id = admin_id
        self.address = f"pool:{pool_id}"
        self.token = token
        self.globals = globals_
        self.config = config
        self.directory: Dict[str, BasePool] = directory if directory is not None else {}
        self.state: PoolState = "active"

        self.log = log if log is not None else EventLog()
        self.locker = Locker(token, self.address, debug=config.debug_locker)
        self.shares = ShareLedger()
        self.channels: Dict[str, DistributionAccumulator] = {
            channel: DistributionAccumulator(self.shares, channel, log=self.log, pool_id=pool_id)
            for channel in CHANNELS
        }
        self.settlements = SettlementQueue(log=self.log, pool_id=pool_id)
        self.receipts = ReceiptStore()

        self.deposit_dates: Dict[str, int] = {}
        self.principal_outstanding: int = 0
        self._entered: bool = False

    # -----------------------------
    # plumbing
    # -----------------------------
    @property
    def asset_id(self) -> str:
        return self.token.asset_id

    @property
    def now(self) -> int:
        return self.globals.now

    def _state_objects(self) -> list:
        return [self, self.shares, *self.channels.values(), self.settlements, self.locker, self.token, self.log]

    def _shared_objects(self) -> list:
        return [self.globals, self.directory, self.config, self.receipts]

    @contextmanager
    def _operation(self, name: str, *others: Optional["BasePool"]) -> Iterator[None]:
        self.globals.require_active()
        if self._entered:
            raise BadState(f"{self.pool_id}: re-entrant call to {name}")
        objects = self._state_objects()
        shared = self._shared_objects()
        for other in others:
            if other is not None and other is not self:
                objects.extend(other._state_objects())
                shared.extend(other._shared_objects())
        self._entered = True
        try:
            with Transaction(objects, name=f"{self.pool_id}:{name}", shared=shared):
                yield
        finally:
            self._entered = False

    def _emit(self, event_type: str, actor: Optional[str] = None, amount: Optional[int] = None, **meta) -> None:
        self.log.add(Event(self.now, event_type, actor_id=actor, pool_id=self.pool_id,
                           asset_id=self.asset_id, amount=amount, meta=meta))

    def _require_admin(self, caller: str) -> None:
        if caller != self.admin_id and not self.globals.is_admin(caller):
            raise NotAuthorized(caller, "pool_admin")

    def _require_state(self, *states: PoolState) -> None:
        if self.state not in states:
            raise BadState(f"{self.pool_id} is {self.state}", state=self.state)

    def _pay(self, to: str, amount: int) -> None:
        if amount and not self.locker.transfer(to, amount):
            raise InsufficientLiquidity(self.pool_id, amount, self.locker.balance())

    def _pull(self, src: str, amount: int) -> None:
        wallet = self.token.balance_of(src)
        if wallet < amount:
            raise InsufficientBalance(src, amount, wallet)
        self.locker.pull(src, amount)

    def _emit_balance(self, account: str) -> None:
        self._emit("BALANCE_UPDATED", actor=account, amount=self.shares.balance_of(account),
                   total_supply=self.shares.total_supply)

    def _compensator(self) -> Optional["BlendedPool"]:
        return None

    # -----------------------------
    # views
    # -----------------------------
    def balance_of(self, account: str) -> int:
        return self.shares.balance_of(account)

    @property
    def total_supply(self) -> int:
        return self.shares.total_supply

    def available_liquidity(self) -> int:
        return max(0, self.locker.balance() - self.settlements.total())

    def total_assets(self) -> int:
        return self.locker.balance() + self.principal_outstanding

    def unlocked_to_withdraw(self, account: str) -> int:
        balance = self.shares.balance_of(account)
        if balance == 0:
            return 0
        if self.now >= self.deposit_dates.get(account, 0) + self.config.lockup_period:
            return balance
        return 0

    def owed(self, channel: Channel, account: str) -> int:
        acc = self.channels[channel]
        if channel == "loss":
            return acc.owed(account, cap=self.shares.balance_of(account))
        return acc.owed(account)

    def claimable(self, channel: Channel, account: str) -> int:
        return max(0, self.owed(channel, account) - self.settlements.pending(channel, account))

    def pending(self, kind: str, account: str) -> int:
        return self.settlements.pending(kind, account)

    def _update_deposit_date(self, account: str, amount: int) -> None:
        balance = self.shares.balance_of(account)
        now = self.now
        if balance == 0:
            self.deposit_dates[account] = now
            return
        prev = self.deposit_dates.get(account, now)
        self.deposit_dates[account] = prev + (now - prev) * amount // (balance + amount)

    # -----------------------------
    # depositor operations
    # -----------------------------
    def deposit(self, caller: str, amount: int) -> None:
        require_amount(amount)
        with self._operation("deposit"):
            self._require_state("active")
            capacity = self.config.capacity
            if capacity is not None and self.shares.total_supply + amount > capacity:
                raise ExceedsCapacity(amount, self.shares.total_supply, capacity)
            if self.locker.balance() + amount < self.config.min_investment:
                raise BelowMinimum(amount, self.config.min_investment)
            self._pull(caller, amount)
            self._update_deposit_date(caller, amount)
            self.shares.mint(caller, amount)
            self._emit_balance(caller)
            self._emit("DEPOSIT", actor=caller, amount=amount)

    def transfer(self, caller: str, to: str, amount: int) -> None:
        require_amount(amount)
        with self._operation("transfer"):
            balance = self.shares.balance_of(caller)
            if balance < amount:
                raise InsufficientBalance(caller, amount, balance)
            unlocked = self.unlocked_to_withdraw(caller)
            if unlocked < amount:
                raise TokensLocked(caller, amount, unlocked)
            # accrued loss does not travel with transferred shares
            if self.owed("loss", caller) > 0:
                raise BadState(f"{caller} has unrecognized losses in {self.pool_id}", state=self.state)
            self._update_deposit_date(to, amount)
            self.shares.transfer(caller, to, amount)
            self._emit_balance(caller)
            self._emit_balance(to)

    def withdraw(self, caller: str, amount: int) -> SettlementReceipt:
        """
        Burn ``amount`` shares and pay out principal net of recognized losses.

        A liquidity shortfall is covered by the blended pool when it can be;
        otherwise the payout goes to the pending withdrawal queue and the
        receipt comes back with status ``pending``.
        """
        require_amount(amount)
        blended = self._compensator()
        with self._operation("withdraw", blended):
            balance = self.shares.balance_of(caller)
            if balance < amount:
                raise InsufficientBalance(caller, amount, balance)
            unlocked = self.unlocked_to_withdraw(caller)
            if unlocked < amount:
                raise TokensLocked(caller, amount, unlocked)

            loss = self.channels["loss"].recognize(caller, amount=amount, cap=balance)
            payout = amount - loss
            status = "paid"
            compensation = 0
            available = self.available_liquidity()
            if payout > available:
                shortfall = payout - available
                if self._can_compensate(blended, caller, shortfall):
                    blended.request_assets(self.address, shortfall)
                    compensation = shortfall
                    status = "compensated"
                else:
                    status = "pending"

            self.shares.burn(caller, amount)
            self._emit_balance(caller)
            if self.shares.balance_of(caller) == 0:
                # loss beyond the last share can no longer be netted
                written_off = self.channels["loss"].recognize(caller)
                if written_off:
                    logger.info("pool=%s wrote off %d residual loss for %s", self.pool_id, written_off, caller)
            if status == "pending":
                self.settlements.add("withdrawal", caller, payout, tick=self.now)
                logger.info("pool=%s withdrawal of %d for %s queued (available=%d)",
                            self.pool_id, payout, caller, available)
            else:
                self._pay(caller, payout)
            self._emit("WITHDRAWAL", actor=caller, amount=payout, shares=amount, loss=loss,
                       status=status, compensation=compensation)
            receipt = SettlementReceipt(tick=self.now, pool_id=self.pool_id, account=caller,
                                        kind="withdrawal", amount=payout, status=status,
                                        loss=loss, compensation=compensation)
        self.receipts.add(receipt)
        return receipt

    def _claim(self, caller: str, channel: Channel) -> bool:
        with self._operation(f"claim_{channel}"):
            amount = self.claimable(channel, caller)
            if amount == 0:
                return self.settlements.pending(channel, caller) == 0
            if self.available_liquidity() < amount:
                self.settlements.add(channel, caller, amount, tick=self.now)
                logger.info("pool=%s %s claim of %d for %s queued", self.pool_id, channel, amount, caller)
                status = "pending"
            else:
                self.channels[channel].recognize(caller, amount=amount)
                self._pay(caller, amount)
                self._emit(f"{channel.upper()}_CLAIMED", actor=caller, amount=amount)
                status = "paid"
            receipt = SettlementReceipt(tick=self.now, pool_id=self.pool_id, account=caller,
                                        kind=channel, amount=amount, status=status)
        self.receipts.add(receipt)
        return receipt.paid

    def claim_reward(self, caller: str) -> bool:
        return self._claim(caller, "reward")

    def claim_yield(self, caller: str) -> bool:
        return self._claim(caller, "yield")

    # -----------------------------
    # borrower operations
    # -----------------------------
    def _require_borrower(self, caller: str) -> None:
        if self.config.borrower is None or caller != self.config.borrower:
            raise NotAuthorized(caller, "borrower")

    def borrow(self, caller: str, amount: int) -> None:
        require_amount(amount)
        with self._operation("borrow"):
            self._require_borrower(caller)
            self._require_state("active")
            available = self.available_liquidity()
            if amount > available:
                raise InsufficientLiquidity(self.pool_id, amount, available)
            self.principal_outstanding += amount
            self._pay(caller, amount)
            self._emit("DRAWDOWN", actor=caller, amount=amount, principal=self.principal_outstanding)

    def repay(self, caller: str, amount: int) -> int:
        """Repay the full principal; anything above it is distributed as reward. Returns the excess."""
        require_amount(amount)
        with self._operation("repay"):
            self._require_borrower(caller)
            principal = self.principal_outstanding
            if amount < principal:
                raise InsufficientRepayment(amount, principal)
            self._pull(caller, amount)
            self.principal_outstanding = 0
            excess = amount - principal
            if excess:
                self.channels["reward"].distribute(excess, tick=self.now)
            self._emit("REPAYMENT", actor=caller, amount=amount, principal=principal, reward=excess)
        return excess

    # -----------------------------
    # admin operations
    # -----------------------------
    def _distribute(self, caller: str, channel: Channel, amount: int) -> None:
        with self._operation(f"distribute_{channel}"):
            self._require_admin(caller)
            self.channels[channel].distribute(amount, tick=self.now)

    def distribute_rewards(self, caller: str, amount: int) -> None:
        self._distribute(caller, "reward", amount)

    def distribute_yields(self, caller: str, amount: int) -> None:
        self._distribute(caller, "yield", amount)

    def distribute_losses(self, caller: str, amount: int) -> None:
        self._distribute(caller, "loss", amount)

    def write_down(self, caller: str, amount: int) -> None:
        require_amount(amount)
        with self._operation("write_down"):
            self._require_admin(caller)
            if amount > self.principal_outstanding:
                raise BadState(f"write-down {amount} exceeds principal {self.principal_outstanding}")
            self.principal_outstanding -= amount
            self.channels["loss"].distribute(amount, tick=self.now)
            self._emit("WRITE_DOWN", actor=caller, amount=amount, principal=self.principal_outstanding)

    def admin_deposit(self, caller: str, amount: int) -> None:
        require_amount(amount)
        with self._operation("admin_deposit"):
            self._require_admin(caller)
            self._pull(caller, amount)
            self._emit("ADMIN_DEPOSIT", actor=caller, amount=amount)

    def deactivate(self, caller: str) -> None:
        with self._operation("deactivate"):
            self._require_admin(caller)
            self._require_state("active")
            if self.principal_outstanding:
                raise BadState(f"{self.pool_id} has {self.principal_outstanding} principal outstanding",
                               state=self.state)
            self.state = "deactivated"
            self._emit("POOL_DEACTIVATED", actor=caller)

    def _conclude(self, caller: str, kind: str, account: str) -> int:
        blended = self._compensator() if kind == "withdrawal" else None
        with self._operation(f"conclude_{kind}", blended):
            self._require_admin(caller)
            pending = self.settlements.pending(kind, account)
            if pending == 0:
                raise BadState(f"No pending {kind} for {account}")
            shortfall = pending - self.locker.balance()
            if shortfall > 0 and self._can_compensate(blended, account, shortfall):
                blended.request_assets(self.address, shortfall)
            amount = self.settlements.conclude(kind, account, self.locker.balance(), tick=self.now)
            if kind != "withdrawal":
                recognized = self.channels[kind].recognize(account, amount=amount)
                if recognized != amount:
                    raise BadState(f"{account} owes {recognized} on {kind}, pending {amount}")
            self._pay(account, amount)
            receipt = SettlementReceipt(tick=self.now, pool_id=self.pool_id, account=account,
                                        kind=kind, amount=amount, status="paid",
                                        compensation=max(0, shortfall) if blended else 0)
        self.receipts.add(receipt)
        return amount

    def conclude_pending_withdrawal(self, caller: str, account: str) -> int:
        return self._conclude(caller, "withdrawal", account)

    def conclude_pending_reward(self, caller: str, account: str) -> int:
        return self._conclude(caller, "reward", account)

    def conclude_pending_yield(self, caller: str, account: str) -> int:
        return self._conclude(caller, "yield", account)

    # -----------------------------
    # compensation
    # -----------------------------
    def _can_compensate(self, blended: Optional["BlendedPool"], account: str, shortfall: int) -> bool:
        if blended is None or shortfall <= 0:
            return False
        if account == blended.address:
            return False
        if blended.token is not self.token:
            return False
        if not blended.is_registered(self.pool_id) or blended.state != "active":
            return False
        return blended.available_liquidity() >= shortfall

    def _accept_compensation(self, source: str, amount: int) -> None:
        self._update_deposit_date(source, amount)
        self.shares.mint(source, amount)
        self._emit_balance(source)
        self._emit("COMPENSATED", actor=source, amount=amount)
        logger.info("pool=%s compensated %d by %s", self.pool_id, amount, source)

    # -----------------------------
    # reporting
    # -----------------------------
    def check_invariants(self) -> List[str]:
        problems = []
        if not self.shares.check_supply():
            problems.append(f"{self.pool_id}: balances do not sum to total supply")
        for channel, acc in self.channels.items():
            if channel != "loss" and acc.dust() < 0:
                problems.append(f"{self.pool_id}: {channel} accrued more than was distributed")
        for kind, entries in self.settlements.pending_by_kind.items():
            if any(v <= 0 for v in entries.values()):
                problems.append(f"{self.pool_id}: non-positive pending {kind} entry")
        return problems

    def snapshot(self) -> dict:
        return {
            "pool_id": self.pool_id,
            "kind": self.kind,
            "state": self.state,
            "total_supply": self.shares.total_supply,
            "holders": len(self.shares.holders()),
            "locker": self.locker.balance(),
            "available_liquidity": self.available_liquidity(),
            "principal_outstanding": self.principal_outstanding,
            "pending_withdrawal": self.settlements.total("withdrawal"),
            "pending_reward": self.settlements.total("reward"),
            "pending_yield": self.settlements.total("yield"),
            "reward_distributed": self.channels["reward"].distributed_total,
            "yield_distributed": self.channels["yield"].distributed_total,
            "loss_distributed": self.channels["loss"].distributed_total,
        }


class RegionalPool(BasePool):
    kind: PoolKind = "regional"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.blended_pool_id: Optional[str] = None

    def _compensator(self) -> Optional["BlendedPool"]:
        if self.blended_pool_id is None:
            return None
        pool = self.directory.get(self.blended_pool_id)
        return pool if isinstance(pool, BlendedPool) else None

    def set_blended_pool(self, caller: str, pool_id: str) -> None:
        with self._operation("set_blended_pool"):
            self._require_admin(caller)
            if self.blended_pool_id is not None:
                raise BadState(f"{self.pool_id} already backed by {self.blended_pool_id}")
            pool = self.directory.get(pool_id)
            if pool is None:
                raise UnknownPool(pool_id)
            if not isinstance(pool, BlendedPool):
                raise BadState(f"{pool_id} is not a blended pool")
            self.blended_pool_id = pool_id
            self._emit("BLENDED_POOL_SET", actor=caller, blended_pool_id=pool_id)


class BlendedPool(BasePool):
    """
    Backstop pool. Registered regional pools draw liquidity from it through
    :meth:`request_assets`; each draw is booked as a deposit of the blended
    pool into the regional pool, so returns flow back through the regional
    pool's reward channel.
    """
    kind: PoolKind = "blended"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.registry: Dict[str, None] = {}
        self.investments: Dict[str, int] = {}

    @property
    def pools(self) -> List[str]:
        return list(self.registry)

    def is_registered(self, pool_id: str) -> bool:
        return pool_id in self.registry

    def _regional(self, pool_id: str) -> RegionalPool:
        pool = self.directory.get(pool_id)
        if pool is None:
            raise UnknownPool(pool_id)
        if not isinstance(pool, RegionalPool):
            raise BadState(f"{pool_id} is not a regional pool")
        return pool

    def add_pool(self, caller: str, pool_id: str) -> None:
        with self._operation("add_pool"):
            self._require_admin(caller)
            pool = self._regional(pool_id)
            if pool.token is not self.token:
                raise InvalidAsset(pool.asset_id)
            if pool_id in self.registry:
                raise BadState(f"{pool_id} already registered")
            self.registry[pool_id] = None
            self._emit("REGIONAL_POOL_ADDED", actor=caller, regional_pool_id=pool_id)

    def remove_pool(self, caller: str, pool_id: str) -> None:
        with self._operation("remove_pool"):
            self._require_admin(caller)
            if pool_id not in self.registry:
                raise UnknownPool(pool_id)
            del self.registry[pool_id]
            self._emit("REGIONAL_POOL_REMOVED", actor=caller, regional_pool_id=pool_id)

    def _registered_by_address(self, address: str) -> Optional[RegionalPool]:
        for pool_id in self.registry:
            pool = self.directory.get(pool_id)
            if pool is not None and pool.address == address:
                return pool
        return None

    def request_assets(self, caller: str, amount: int) -> None:
        require_amount(amount)
        regional = self._registered_by_address(caller)
        if regional is None:
            raise NotAuthorized(caller, "registered_pool")
        with self._operation("request_assets", regional):
            if regional.token is not self.token:
                raise InvalidAsset(regional.asset_id)
            available = self.available_liquidity()
            if available < amount:
                raise InsufficientLiquidity(self.pool_id, amount, available)
            self.investments[regional.pool_id] = self.investments.get(regional.pool_id, 0) + amount
            regional._accept_compensation(self.address, amount)
            self._pay(regional.address, amount)
            self._emit("ASSETS_REQUESTED", actor=regional.address, amount=amount,
                       regional_pool_id=regional.pool_id)

    def harvest(self, caller: str, pool_id: str) -> bool:
        """Claim this pool's reward from a regional pool into the locker."""
        regional = self._regional(pool_id)
        with self._operation("harvest", regional):
            self._require_admin(caller)
            before = self.locker.balance()
            ok = regional.claim_reward(self.address)
            self._emit("HARVEST", actor=caller, amount=self.locker.balance() - before,
                       regional_pool_id=pool_id, paid=ok)
        return ok

    def recall(self, caller: str, pool_id: str, amount: int) -> SettlementReceipt:
        """Withdraw previously supplied liquidity from a regional pool."""
        require_amount(amount)
        regional = self._regional(pool_id)
        with self._operation("recall", regional):
            self._require_admin(caller)
            invested = self.investments.get(pool_id, 0)
            if amount > invested:
                raise InvalidAmount(amount)
            receipt = regional.withdraw(self.address, amount)
            self.investments[pool_id] = invested - amount
            if self.investments[pool_id] == 0:
                del self.investments[pool_id]
        return receipt

    def check_invariants(self) -> List[str]:
        problems = super().check_invariants()
        for pool_id, invested in self.investments.items():
            pool = self.directory.get(pool_id)
            held = pool.shares.balance_of(self.address) if pool is not None else 0
            if held != invested:
                problems.append(f"{self.pool_id}: holds {held} shares of {pool_id}, booked {invested}")
        return problems

    def snapshot(self) -> dict:
        row = super().snapshot()
        row["registered_pools"] = len(self.registry)
        row["invested"] = sum(self.investments.values())
        return row
