"""
Typed errors raised by pool operations.

Every error carries a machine-readable ``code`` plus the structured values
that caused it, so callers catch by type and never parse messages.

    PoolError
    +-- ZeroSupply
    +-- InvalidAmount
    +-- BelowMinimum
    +-- ExceedsCapacity
    +-- TokensLocked
    +-- InsufficientBalance
    +-- InsufficientLiquidity
    +-- InsufficientRepayment
    +-- BadState
    +-- NotAuthorized
    +-- ProtocolPaused
    +-- InvalidAsset
    +-- DuplicatePool
    +-- UnknownPool

A liquidity shortfall during a claim or withdrawal is not an error: the
amount moves to the settlement queue and the caller gets a "pending"
outcome. ``InsufficientLiquidity`` is raised only for direct fund moves
(borrow, conclude, request_assets).
"""
from __future__ import annotations
from typing import Optional


class PoolError(Exception):
    code: str = "POOL_ERROR"

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.details = details


class ZeroSupply(PoolError):
    code = "ZERO_SUPPLY"

    def __init__(self, channel: str) -> None:
        self.channel = channel
        super().__init__(f"Cannot distribute on '{channel}' with no shares outstanding", channel=channel)


class InvalidAmount(PoolError, ValueError):
    code = "INVALID_AMOUNT"

    def __init__(self, amount: int) -> None:
        self.amount = amount
        super().__init__(f"Amount must be a positive integer, got {amount!r}", amount=amount)


class BelowMinimum(PoolError):
    code = "BELOW_MINIMUM"

    def __init__(self, amount: int, minimum: int) -> None:
        self.amount = amount
        self.minimum = minimum
        super().__init__(f"Amount {amount} is below the minimum investment {minimum}",
                         amount=amount, minimum=minimum)


class ExceedsCapacity(PoolError):
    code = "EXCEEDS_CAPACITY"

    def __init__(self, amount: int, total_supply: int, capacity: int) -> None:
        self.amount = amount
        self.total_supply = total_supply
        self.capacity = capacity
        super().__init__(f"Deposit of {amount} exceeds capacity ({total_supply}/{capacity})",
                         amount=amount, total_supply=total_supply, capacity=capacity)


class TokensLocked(PoolError):
    code = "TOKENS_LOCKED"

    def __init__(self, account: str, amount: int, unlocked: int) -> None:
        self.account = account
        self.amount = amount
        self.unlocked = unlocked
        super().__init__(f"{account} can move {unlocked}, requested {amount} (lockup not elapsed)",
                         account=account, amount=amount, unlocked=unlocked)


class InsufficientBalance(PoolError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, account: str, amount: int, balance: int) -> None:
        self.account = account
        self.amount = amount
        self.balance = balance
        super().__init__(f"{account} holds {balance}, requested {amount}",
                         account=account, amount=amount, balance=balance)


class InsufficientLiquidity(PoolError):
    code = "INSUFFICIENT_LIQUIDITY"

    def __init__(self, pool_id: str, amount: int, available: int) -> None:
        self.pool_id = pool_id
        self.amount = amount
        self.available = available
        super().__init__(f"Pool {pool_id} has {available} available, needs {amount}",
                         pool_id=pool_id, amount=amount, available=available)


class InsufficientRepayment(PoolError):
    code = "INSUFFICIENT_REPAYMENT"

    def __init__(self, amount: int, principal: int) -> None:
        self.amount = amount
        self.principal = principal
        super().__init__(f"Repayment {amount} does not cover outstanding principal {principal}",
                         amount=amount, principal=principal)


class BadState(PoolError):
    code = "BAD_STATE"

    def __init__(self, message: str, state: Optional[str] = None) -> None:
        self.state = state
        super().__init__(message, state=state)


class NotAuthorized(PoolError):
    code = "NOT_AUTHORIZED"

    def __init__(self, caller: str, capability: str) -> None:
        self.caller = caller
        self.capability = capability
        super().__init__(f"{caller} lacks capability '{capability}'", caller=caller, capability=capability)


class ProtocolPaused(PoolError):
    code = "PROTOCOL_PAUSED"

    def __init__(self) -> None:
        super().__init__("Protocol is paused")


class InvalidAsset(PoolError):
    code = "INVALID_ASSET"

    def __init__(self, asset_id: str) -> None:
        self.asset_id = asset_id
        super().__init__(f"Asset {asset_id} is not accepted by the protocol", asset_id=asset_id)


class DuplicatePool(PoolError):
    code = "DUPLICATE_POOL"

    def __init__(self, pool_id: str) -> None:
        self.pool_id = pool_id
        super().__init__(f"Pool {pool_id} already exists", pool_id=pool_id)


class UnknownPool(PoolError, KeyError):
    code = "UNKNOWN_POOL"

    def __init__(self, pool_id: str) -> None:
        self.pool_id = pool_id
        super().__init__(f"Pool {pool_id} is not known", pool_id=pool_id)

    def __str__(self) -> str:
        return self.args[0]
