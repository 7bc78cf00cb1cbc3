from dataclasses import dataclass
from typing import Optional

@dataclass
class PoolConfig:
    # Lockup (ticks) measured from the weighted deposit date
    lockup_period: int = 0
    # Locker balance required after a deposit lands
    min_investment: int = 0
    # Upper bound on total supply; None means unbounded
    capacity: Optional[int] = None
    # Only this address may draw funds
    borrower: Optional[str] = None

    # Debug
    debug_locker: bool = False

    def __post_init__(self) -> None:
        if self.lockup_period < 0:
            raise ValueError("lockup_period must be >= 0")
        if self.min_investment < 0:
            raise ValueError("min_investment must be >= 0")
        if self.capacity is not None and self.capacity <= 0:
            raise ValueError("capacity must be positive")


@dataclass
class ScenarioConfig:
    # Network shape
    regional_pools: int = 4
    depositors_per_pool: int = 8
    blended_depositors: int = 4
    asset_symbol: str = "USDC"

    # Wallets / deposits
    initial_wallet_mean: int = 50_000
    deposit_size_mean: int = 2_000
    blended_seed_liquidity: int = 100_000

    # Pool parameters
    lockup_period: int = 4
    min_investment: int = 100
    pool_capacity: int = 5_000_000

    # Activity probabilities (per pool, per tick)
    p_deposit: float = 0.6
    p_withdraw: float = 0.3
    p_transfer: float = 0.1
    p_borrow: float = 0.3
    p_repay: float = 0.2
    p_distribute: float = 0.25
    p_claim: float = 0.4
    p_default: float = 0.02
    p_conclude: float = 0.5

    # Grants distributed as reward (mean, per distribution)
    reward_grant_mean: int = 150

    # Loan sizing (share of available liquidity per draw)
    borrow_fraction_mean: float = 0.3
    repay_premium_rate: float = 0.05
    default_haircut: float = 0.25

    # Reporting
    metrics_stride: int = 1
    event_log_maxlen: Optional[int] = 50_000
    check_invariants_each_tick: bool = True

    # Debug
    debug_locker: bool = False

    def pool_config(self, borrower: Optional[str] = None) -> PoolConfig:
        return PoolConfig(
            lockup_period=self.lockup_period,
            min_investment=self.min_investment,
            capacity=self.pool_capacity,
            borrower=borrower,
            debug_locker=self.debug_locker,
        )
