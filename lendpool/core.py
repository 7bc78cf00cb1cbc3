from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Tuple, Optional, Literal, List, Iterator
from collections import deque
import logging

logger = logging.getLogger(__name__)

from .errors import (
    InvalidAmount, InsufficientBalance, InsufficientLiquidity, ZeroSupply, BadState,
)

# Fixed-point multiplier for per-share accounting
SCALE = 2 ** 128

Channel = Literal["reward", "yield", "loss"]
SettlementKind = Literal["withdrawal", "reward", "yield"]
SETTLEMENT_KINDS: Tuple[str, ...] = ("withdrawal", "reward", "yield")


def require_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(amount)
    return amount


def format_balances(balances: Dict[str, int]) -> str:
    if not balances:
        return "(empty)"
    items = sorted(balances.items(), key=lambda kv: kv[0])
    return ", ".join(f"{account}:{amount}" for account, amount in items)

# -----------------------------
# Events
# -----------------------------
@dataclass(frozen=True)
class Event:
    tick: int
    event_type: str
    actor_id: Optional[str] = None
    pool_id: Optional[str] = None
    asset_id: Optional[str] = None
    amount: Optional[int] = None
    meta: dict = field(default_factory=dict)

class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)
        # events ever appended, including ones the bounded deque dropped
        self.appended: int = 0

    def add(self, e: Event) -> None:
        self.events.append(e)
        self.appended += 1

    def checkpoint(self) -> int:
        return self.appended

    def restore(self, mark: int) -> None:
        """Drop events added since ``mark``. Events the deque already evicted stay gone."""
        while self.appended > mark and self.events:
            self.events.pop()
            self.appended -= 1
        self.appended = mark

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]

    def __len__(self) -> int:
        return len(self.events)


# -----------------------------
# Custody
# -----------------------------
class Token:
    """Integer balances of one asset, keyed by address."""
    def __init__(self, asset_id: str) -> None:
        self.asset_id = asset_id
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[Tuple[str, str], int] = {}
        self.minted: int = 0

    def balance_of(self, addr: str) -> int:
        return self.balances.get(addr, 0)

    def mint(self, addr: str, amount: int) -> None:
        require_amount(amount)
        self.balances[addr] = self.balance_of(addr) + amount
        self.minted += amount

    def transfer(self, src: str, dst: str, amount: int) -> bool:
        if amount < 0 or self.balance_of(src) < amount:
            return False
        if amount == 0 or src == dst:
            return True
        self.balances[src] = self.balance_of(src) - amount
        if self.balances[src] == 0:
            self.balances.pop(src, None)
        self.balances[dst] = self.balance_of(dst) + amount
        return True

    def approve(self, owner: str, spender: str, amount: int) -> None:
        self.allowances[(owner, spender)] = max(0, int(amount))

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get((owner, spender), 0)

    def transfer_from(self, spender: str, src: str, dst: str, amount: int) -> bool:
        allowed = self.allowance(src, spender)
        if allowed < amount:
            return False
        if not self.transfer(src, dst, amount):
            return False
        self.allowances[(src, spender)] = allowed - amount
        return True

    def total_supply(self) -> int:
        return self.minted

    def checkpoint(self) -> tuple:
        return dict(self.balances), dict(self.allowances), self.minted

    def restore(self, mark: tuple) -> None:
        balances, allowances, minted = mark
        self.balances.clear()
        self.balances.update(balances)
        self.allowances.clear()
        self.allowances.update(allowances)
        self.minted = minted


class Locker:
    """A pool's custody account: its address in the token ledger."""
    def __init__(self, token: Token, address: str, debug: bool = False) -> None:
        self.token = token
        self.address = address
        self.debug = debug

    @property
    def asset_id(self) -> str:
        return self.token.asset_id

    def balance(self) -> int:
        return self.token.balance_of(self.address)

    def transfer(self, to: str, amount: int) -> bool:
        before = self.balance()
        ok = self.token.transfer(self.address, to, amount)
        if ok:
            self._debug_change("out", to, amount, before)
        return ok

    def pull(self, src: str, amount: int) -> bool:
        before = self.balance()
        ok = self.token.transfer(src, self.address, amount)
        if ok:
            self._debug_change("in", src, amount, before)
        return ok

    def approve(self, spender: str, amount: int) -> None:
        self.token.approve(self.address, spender, amount)

    def _debug_change(self, direction: str, counterparty: str, amount: int, before: int) -> None:
        if not self.debug or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[LOCKER] locker=%s asset=%s direction=%s counterparty=%s amount=%d before=%d after=%d",
            self.address,
            self.asset_id,
            direction,
            counterparty,
            amount,
            before,
            self.balance(),
        )


# -----------------------------
# Per-share distribution
# -----------------------------
class DistributionAccumulator:
    """
    Pull-based per-share accounting for one distribution channel.

    ``per_share`` grows by ``amount * SCALE // total_supply`` on every
    distribution. Each account carries a signed correction so that

        accumulated(a) = (per_share * balance(a) + correction(a)) // SCALE

    only counts distributions made while the balance was held. The ledger
    calls :meth:`on_balance_change` on every mint, burn and transfer.
    """
    def __init__(self, ledger: "ShareLedger", channel: Channel, log: Optional[EventLog] = None,
                 pool_id: Optional[str] = None) -> None:
        self.ledger = ledger
        self.channel = channel
        self.log = log
        self.pool_id = pool_id
        self.per_share: int = 0
        self.corrections: Dict[str, int] = {}
        self.recognized: Dict[str, int] = {}
        self.distributed_total: int = 0
        ledger.attach(self)

    def distribute(self, amount: int, tick: int = 0) -> None:
        if amount < 0:
            raise InvalidAmount(amount)
        supply = self.ledger.total_supply
        if supply == 0:
            raise ZeroSupply(self.channel)
        if amount == 0:
            return
        self.per_share += amount * SCALE // supply
        self.distributed_total += amount
        if self.log is not None:
            event_type = "LOSSES_DISTRIBUTED" if self.channel == "loss" else "FUNDS_DISTRIBUTED"
            self.log.add(Event(tick, event_type, pool_id=self.pool_id, amount=amount,
                               meta={"channel": self.channel, "total_supply": supply}))

    def on_balance_change(self, account: str, delta: int, increase: bool) -> None:
        magnitude = self.per_share * delta
        if increase:
            self.corrections[account] = self.corrections.get(account, 0) - magnitude
        else:
            self.corrections[account] = self.corrections.get(account, 0) + magnitude

    def accumulated(self, account: str) -> int:
        raw = self.per_share * self.ledger.balance_of(account) + self.corrections.get(account, 0)
        assert raw >= 0, f"negative accumulation for {account} on {self.channel}"
        return max(0, raw) // SCALE

    def owed(self, account: str, cap: Optional[int] = None) -> int:
        owed = self.accumulated(account) - self.recognized.get(account, 0)
        assert owed >= 0, f"recognized more than accumulated for {account} on {self.channel}"
        owed = max(0, owed)
        if cap is not None:
            owed = min(owed, max(0, cap))
        return owed

    def recognize(self, account: str, amount: Optional[int] = None, cap: Optional[int] = None) -> int:
        owed = self.owed(account, cap=cap)
        if amount is not None:
            owed = min(owed, max(0, amount))
        if owed:
            self.recognized[account] = self.recognized.get(account, 0) + owed
        return owed

    def total_owed(self) -> int:
        return sum(self.owed(a) for a in self.ledger.holders_with_history())

    def dust(self) -> int:
        # undistributable remainder plus anything still owed
        return self.distributed_total - sum(self.accumulated(a) for a in self.ledger.holders_with_history())


# -----------------------------
# Shares
# -----------------------------
class ShareLedger:
    def __init__(self) -> None:
        self.balances: Dict[str, int] = {}
        self.total_supply: int = 0
        self.accumulators: List[DistributionAccumulator] = []
        # every account that ever held shares; owed amounts outlive balances
        self.known: Dict[str, None] = {}

    def attach(self, acc: DistributionAccumulator) -> None:
        self.accumulators.append(acc)

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    def holders(self) -> List[str]:
        return [a for a, b in self.balances.items() if b > 0]

    def holders_with_history(self) -> Iterator[str]:
        return iter(self.known)

    def _notify(self, account: str, delta: int, increase: bool) -> None:
        for acc in self.accumulators:
            acc.on_balance_change(account, delta, increase)

    def mint(self, account: str, amount: int) -> None:
        require_amount(amount)
        self.balances[account] = self.balance_of(account) + amount
        self.total_supply += amount
        self.known.setdefault(account, None)
        self._notify(account, amount, True)

    def burn(self, account: str, amount: int) -> None:
        require_amount(amount)
        balance = self.balance_of(account)
        if balance < amount:
            raise InsufficientBalance(account, amount, balance)
        self.balances[account] = balance - amount
        self.total_supply -= amount
        self._notify(account, amount, False)

    def transfer(self, src: str, dst: str, amount: int) -> None:
        require_amount(amount)
        balance = self.balance_of(src)
        if balance < amount:
            raise InsufficientBalance(src, amount, balance)
        if src == dst:
            return
        self.balances[src] = balance - amount
        self.balances[dst] = self.balance_of(dst) + amount
        self.known.setdefault(dst, None)
        self._notify(src, amount, False)
        self._notify(dst, amount, True)

    def check_supply(self) -> bool:
        return sum(self.balances.values()) == self.total_supply


# -----------------------------
# Deferred settlement
# -----------------------------
class SettlementQueue:
    """
    Pending amounts per settlement kind and account.

    An entry moves None -> Pending when a payout finds too little liquidity
    and Pending -> None only through :meth:`conclude`, all-or-nothing.
    """
    def __init__(self, log: Optional[EventLog] = None, pool_id: Optional[str] = None) -> None:
        self.log = log
        self.pool_id = pool_id
        self.pending_by_kind: Dict[str, Dict[str, int]] = {k: {} for k in SETTLEMENT_KINDS}

    def _entries(self, kind: str) -> Dict[str, int]:
        try:
            return self.pending_by_kind[kind]
        except KeyError:
            raise ValueError(f"unknown settlement kind {kind!r}") from None

    def pending(self, kind: SettlementKind, account: str) -> int:
        return self._entries(kind).get(account, 0)

    def entries(self, kind: SettlementKind) -> Dict[str, int]:
        return dict(self._entries(kind))

    def total(self, kind: Optional[SettlementKind] = None) -> int:
        kinds = (kind,) if kind else SETTLEMENT_KINDS
        return sum(sum(self._entries(k).values()) for k in kinds)

    def add(self, kind: SettlementKind, account: str, amount: int, tick: int = 0) -> int:
        require_amount(amount)
        entries = self._entries(kind)
        entries[account] = entries.get(account, 0) + amount
        if self.log is not None:
            self.log.add(Event(tick, f"PENDING_{kind.upper()}", actor_id=account, pool_id=self.pool_id,
                               amount=amount, meta={"pending_total": entries[account]}))
        return entries[account]

    def conclude(self, kind: SettlementKind, account: str, available: int, tick: int = 0) -> int:
        entries = self._entries(kind)
        amount = entries.get(account, 0)
        if amount == 0:
            raise BadState(f"No pending {kind} for {account}")
        if available < amount:
            raise InsufficientLiquidity(self.pool_id or "?", amount, available)
        del entries[account]
        if self.log is not None:
            self.log.add(Event(tick, f"PENDING_{kind.upper()}_CONCLUDED", actor_id=account,
                               pool_id=self.pool_id, amount=amount))
        return amount


# -----------------------------
# Receipts
# -----------------------------
@dataclass
class SettlementReceipt:
    tick: int
    pool_id: str
    account: str
    kind: str
    amount: int
    status: Literal["paid", "compensated", "pending"]
    loss: int = 0
    compensation: int = 0

    @property
    def paid(self) -> bool:
        return self.status != "pending"

    def to_dict(self) -> dict:
        return {
            "tick": self.tick,
            "pool_id": self.pool_id,
            "account": self.account,
            "kind": self.kind,
            "amount": int(self.amount),
            "status": self.status,
            "loss": int(self.loss),
            "compensation": int(self.compensation),
        }

class ReceiptStore:
    def __init__(self) -> None:
        self.receipts: List[SettlementReceipt] = []

    def add(self, r: SettlementReceipt) -> None:
        self.receipts.append(r)

    def tail(self, n: int = 200) -> List[SettlementReceipt]:
        return self.receipts[-n:]
