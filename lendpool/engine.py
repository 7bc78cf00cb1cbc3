from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
import logging
import numpy as np
import random

from .config import ScenarioConfig
from .core import Event, EventLog, Token, format_balances
from .errors import InsufficientLiquidity, PoolError
from .factory import PoolFactory
from .globals import ProtocolGlobals
from .metrics import MetricsStore, event_counts
from .pool import BasePool, BlendedPool, RegionalPool

logger = logging.getLogger(__name__)

GOVERNOR_ID = "governor"
SETTLER_ID = "settler"

@dataclass
class Depositor:
    agent_id: str
    pool_id: str

class SimulationEngine:
    """
    Seeded random driver over one blended pool and several regional pools.

    Each tick advances the protocol clock and lets depositors, borrowers and
    the settler act on every pool. Expected rejections (locked tokens,
    capacity, ...) are logged as ACTION_FAILED events; invariant violations
    are collected in ``violations``.
    """
    def __init__(self, cfg: ScenarioConfig, seed: int = 1) -> None:
        self.cfg = cfg
        self.rng = random.Random(seed)
        np.random.seed(seed)

        self.tick: int = 0
        self.log = EventLog(maxlen=cfg.event_log_maxlen)
        self.metrics = MetricsStore()
        self.violations: List[str] = []

        self.globals = ProtocolGlobals(GOVERNOR_ID, admins=[SETTLER_ID], valid_assets=[cfg.asset_symbol])
        self.factory = PoolFactory(self.globals, log=self.log)
        self.token: Token = self.factory.token(cfg.asset_symbol)

        self.depositors: Dict[str, List[Depositor]] = {}
        self.borrowers: Dict[str, str] = {}
        self.blended: Optional[BlendedPool] = None
        self._agent_counter = 0
        self._failures_tick: int = 0
        self._harvested_tick: int = 0

        self._bootstrap()

    # -----------------------------
    # setup
    # -----------------------------
    def _new_agent_id(self, prefix: str) -> str:
        self._agent_counter += 1
        return f"{prefix}_{self._agent_counter:04d}"

    def _fund(self, agent_id: str, mean: float) -> None:
        amount = max(1, int(np.random.exponential(mean)))
        self.token.mint(agent_id, amount)

    def _bootstrap(self) -> None:
        cfg = self.cfg
        self.blended = self.factory.create_blended_pool(SETTLER_ID, cfg.asset_symbol, cfg.pool_config())
        blended_agents = []
        for _ in range(cfg.blended_depositors):
            agent_id = self._new_agent_id("lp")
            self.token.mint(agent_id, cfg.blended_seed_liquidity)
            self.blended.deposit(agent_id, cfg.blended_seed_liquidity)
            blended_agents.append(Depositor(agent_id, self.blended.pool_id))
        self.depositors[self.blended.pool_id] = blended_agents

        for _ in range(cfg.regional_pools):
            self.add_regional_pool()
        self.snapshot_metrics()

    def add_regional_pool(self) -> RegionalPool:
        cfg = self.cfg
        borrower = self._new_agent_id("borrower")
        pool = self.factory.create_regional_pool(SETTLER_ID, cfg.asset_symbol, cfg.pool_config(borrower=borrower))
        pool.set_blended_pool(SETTLER_ID, self.blended.pool_id)
        self.blended.add_pool(SETTLER_ID, pool.pool_id)
        self.borrowers[pool.pool_id] = borrower
        agents = []
        for _ in range(cfg.depositors_per_pool):
            agent_id = self._new_agent_id("agent")
            self._fund(agent_id, cfg.initial_wallet_mean)
            agents.append(Depositor(agent_id, pool.pool_id))
        self.depositors[pool.pool_id] = agents
        return pool

    @property
    def pools(self) -> Dict[str, BasePool]:
        return self.factory.pools

    # -----------------------------
    # actions
    # -----------------------------
    def _attempt(self, pool: BasePool, action: str, actor: str, fn: Callable[[], object]) -> Optional[object]:
        try:
            return fn()
        except PoolError as exc:
            self._failures_tick += 1
            self.log.add(Event(self.tick, "ACTION_FAILED", actor_id=actor, pool_id=pool.pool_id,
                               meta={"action": action, "code": exc.code, "reason": str(exc)}))
            return None

    def _pick(self, pool: BasePool) -> Optional[str]:
        agents = self.depositors.get(pool.pool_id) or []
        if not agents:
            return None
        return self.rng.choice(agents).agent_id

    def _deposit(self, pool: BasePool) -> None:
        agent = self._pick(pool)
        if agent is None:
            return
        wallet = self.token.balance_of(agent)
        amount = min(wallet, max(self.cfg.min_investment, int(np.random.exponential(self.cfg.deposit_size_mean))))
        if amount <= 0:
            return
        self._attempt(pool, "deposit", agent, lambda: pool.deposit(agent, amount))

    def _withdraw(self, pool: BasePool) -> None:
        agent = self._pick(pool)
        if agent is None:
            return
        unlocked = pool.unlocked_to_withdraw(agent)
        if unlocked <= 0:
            return
        amount = self.rng.randint(1, unlocked)
        self._attempt(pool, "withdraw", agent, lambda: pool.withdraw(agent, amount))

    def _transfer(self, pool: BasePool) -> None:
        src = self._pick(pool)
        dst = self._pick(pool)
        if src is None or dst is None or src == dst:
            return
        unlocked = pool.unlocked_to_withdraw(src)
        if unlocked <= 0:
            return
        amount = self.rng.randint(1, unlocked)
        self._attempt(pool, "transfer", src, lambda: pool.transfer(src, dst, amount))

    def _borrow(self, pool: RegionalPool) -> None:
        borrower = self.borrowers[pool.pool_id]
        available = pool.available_liquidity()
        frac = min(1.0, float(np.random.exponential(self.cfg.borrow_fraction_mean)))
        amount = int(available * frac)
        if amount <= 0:
            return
        self._attempt(pool, "borrow", borrower, lambda: pool.borrow(borrower, amount))

    def _repay(self, pool: RegionalPool) -> None:
        principal = pool.principal_outstanding
        if principal <= 0:
            return
        borrower = self.borrowers[pool.pool_id]
        amount = principal + int(principal * self.cfg.repay_premium_rate)
        shortfall = amount - self.token.balance_of(borrower)
        if shortfall > 0:
            # borrower's business income
            self.token.mint(borrower, shortfall)
        self._attempt(pool, "repay", borrower, lambda: pool.repay(borrower, amount))

    def _default(self, pool: RegionalPool) -> None:
        amount = int(pool.principal_outstanding * self.cfg.default_haircut)
        if amount <= 0:
            return
        self._attempt(pool, "write_down", SETTLER_ID, lambda: pool.write_down(SETTLER_ID, amount))

    def _distribute(self, pool: RegionalPool) -> None:
        if pool.total_supply == 0:
            return
        amount = max(1, int(np.random.exponential(self.cfg.reward_grant_mean)))
        # grant funding lands in the locker before it is distributed
        self.token.mint(SETTLER_ID, amount)
        self._attempt(pool, "admin_deposit", SETTLER_ID, lambda: pool.admin_deposit(SETTLER_ID, amount))
        self._attempt(pool, "distribute_rewards", SETTLER_ID, lambda: pool.distribute_rewards(SETTLER_ID, amount))

    def _claim(self, pool: BasePool, channel: str) -> None:
        agent = self._pick(pool)
        if agent is None or pool.claimable(channel, agent) <= 0:
            return
        fn = pool.claim_reward if channel == "reward" else pool.claim_yield
        self._attempt(pool, f"claim_{channel}", agent, lambda: fn(agent))

    def _conclude_pending(self, pool: BasePool) -> None:
        for kind in ("withdrawal", "reward", "yield"):
            for account, amount in pool.settlements.entries(kind).items():
                if kind != "withdrawal" and pool.locker.balance() < amount:
                    continue
                conclude = getattr(pool, f"conclude_pending_{kind}")
                try:
                    conclude(SETTLER_ID, account)
                except InsufficientLiquidity:
                    continue
                except PoolError as exc:
                    self._failures_tick += 1
                    logger.warning("conclude %s for %s in %s failed: %s", kind, account, pool.pool_id, exc)

    def _harvest(self) -> None:
        blended = self.blended
        harvested_before = blended.locker.balance()
        for pool_id in blended.pools:
            pool = self.pools[pool_id]
            if pool.claimable("reward", blended.address) > 0:
                self._attempt(blended, "harvest", SETTLER_ID, lambda: blended.harvest(SETTLER_ID, pool_id))
        harvested = blended.locker.balance() - harvested_before
        self._harvested_tick = max(0, harvested)
        if self._harvested_tick and blended.total_supply > 0:
            self._attempt(blended, "distribute_yields", SETTLER_ID,
                          lambda: blended.distribute_yields(SETTLER_ID, self._harvested_tick))

    def _act_on_pool(self, pool: RegionalPool) -> None:
        cfg = self.cfg
        if self.rng.random() < cfg.p_deposit:
            self._deposit(pool)
        if self.rng.random() < cfg.p_withdraw:
            self._withdraw(pool)
        if self.rng.random() < cfg.p_transfer:
            self._transfer(pool)
        if self.rng.random() < cfg.p_borrow:
            self._borrow(pool)
        if self.rng.random() < cfg.p_repay:
            self._repay(pool)
        elif self.rng.random() < cfg.p_default:
            self._default(pool)
        if self.rng.random() < cfg.p_distribute:
            self._distribute(pool)
        if self.rng.random() < cfg.p_claim:
            self._claim(pool, "reward")
        if self.rng.random() < cfg.p_conclude:
            self._conclude_pending(pool)

    def step(self, n_ticks: int = 1) -> None:
        for _ in range(n_ticks):
            self.tick += 1
            self.globals.advance(1)
            self._failures_tick = 0
            self._harvested_tick = 0

            pools = self.factory.regional_pools()
            self.rng.shuffle(pools)
            for pool in pools:
                self._act_on_pool(pool)

            self._harvest()
            if self.rng.random() < self.cfg.p_claim:
                self._claim(self.blended, "yield")
            if self.rng.random() < self.cfg.p_withdraw:
                self._withdraw(self.blended)
            self._conclude_pending(self.blended)

            if self.cfg.check_invariants_each_tick:
                problems = self.check_invariants()
                if problems:
                    self.violations.extend(f"tick {self.tick}: {p}" for p in problems)
                    for p in problems:
                        logger.error("invariant violated at tick %d: %s", self.tick, p)
            self.snapshot_metrics()

    # -----------------------------
    # checks & reporting
    # -----------------------------
    def check_invariants(self) -> List[str]:
        problems: List[str] = []
        for pool in self.pools.values():
            problems.extend(pool.check_invariants())
        held = sum(self.token.balances.values())
        if held != self.token.total_supply():
            problems.append(f"token balances sum to {held}, minted {self.token.total_supply()}")
        return problems

    def snapshot_metrics(self) -> None:
        stride = int(self.cfg.metrics_stride or 0)
        if stride <= 0 or self.tick % stride != 0:
            return
        rows = []
        for pool in self.pools.values():
            row = pool.snapshot()
            row["tick"] = self.tick
            rows.append(row)
        self.metrics.add_pool_rows(rows)
        compensations = sum(1 for e in self.log.of_type("COMPENSATED") if e.tick == self.tick)
        self.metrics.add_network({
            "tick": self.tick,
            "pools": len(rows),
            "total_supply": sum(r["total_supply"] for r in rows),
            "locker_total": sum(r["locker"] for r in rows),
            "principal_outstanding": sum(r["principal_outstanding"] for r in rows),
            "pending_withdrawal": sum(r["pending_withdrawal"] for r in rows),
            "pending_reward": sum(r["pending_reward"] for r in rows),
            "loss_distributed": sum(r["loss_distributed"] for r in rows),
            "compensations": compensations,
            "harvested": self._harvested_tick,
            "failed_actions": self._failures_tick,
            "violations": len(self.violations),
        })
        if logger.isEnabledFor(logging.DEBUG):
            lockers = {r["pool_id"]: r["locker"] for r in rows}
            logger.debug("tick=%d lockers={ %s }", self.tick, format_balances(lockers))

    def event_counts(self):
        """Events per tick and type over what the (bounded) log still holds."""
        return event_counts(self.log.events)
