from __future__ import annotations
from typing import Dict, List, Optional
import logging

from .config import PoolConfig
from .core import Event, EventLog, Token
from .errors import BadState, DuplicatePool, InvalidAsset, UnknownPool
from .globals import ProtocolGlobals
from .pool import BasePool, BlendedPool, RegionalPool

logger = logging.getLogger(__name__)


class PoolFactory:
    """Creates pools under unique identifiers and serves as the pool directory."""
    def __init__(self, globals_: ProtocolGlobals, log: Optional[EventLog] = None) -> None:
        self.globals = globals_
        self.log = log if log is not None else EventLog()
        self.tokens: Dict[str, Token] = {}
        self.pools: Dict[str, BasePool] = {}
        self.blended_pool_id: Optional[str] = None
        self.pool_counter = 0

    def token(self, asset_id: str) -> Token:
        if not self.globals.is_valid_asset(asset_id):
            raise InvalidAsset(asset_id)
        tok = self.tokens.get(asset_id)
        if tok is None:
            tok = Token(asset_id)
            self.tokens[asset_id] = tok
        return tok

    def _new_pool_id(self, prefix: str) -> str:
        self.pool_counter += 1
        return f"{prefix}_{self.pool_counter:04d}"

    def _register(self, pool: BasePool, caller: str) -> None:
        self.pools[pool.pool_id] = pool
        self.log.add(Event(self.globals.now, "POOL_CREATED", actor_id=caller, pool_id=pool.pool_id,
                           asset_id=pool.asset_id, meta={"kind": pool.kind, "admin": pool.admin_id}))
        logger.info("created %s pool %s (asset=%s)", pool.kind, pool.pool_id, pool.asset_id)

    def _prepare(self, caller: str, pool_id: Optional[str], asset_id: str, prefix: str) -> tuple:
        self.globals.require_active()
        self.globals.require_admin(caller)
        token = self.token(asset_id)
        pool_id = pool_id or self._new_pool_id(prefix)
        if pool_id in self.pools:
            raise DuplicatePool(pool_id)
        return pool_id, token

    def create_regional_pool(self, caller: str, asset_id: str, config: Optional[PoolConfig] = None,
                             pool_id: Optional[str] = None, admin_id: Optional[str] = None) -> RegionalPool:
        pool_id, token = self._prepare(caller, pool_id, asset_id, "regional")
        pool = RegionalPool(pool_id, admin_id or caller, token, self.globals, config or PoolConfig(),
                            directory=self.pools, log=self.log)
        self._register(pool, caller)
        return pool

    def create_blended_pool(self, caller: str, asset_id: str, config: Optional[PoolConfig] = None,
                            pool_id: Optional[str] = None, admin_id: Optional[str] = None) -> BlendedPool:
        if self.blended_pool_id is not None:
            raise BadState(f"blended pool {self.blended_pool_id} already exists")
        pool_id, token = self._prepare(caller, pool_id, asset_id, "blended")
        pool = BlendedPool(pool_id, admin_id or caller, token, self.globals, config or PoolConfig(),
                           directory=self.pools, log=self.log)
        self._register(pool, caller)
        self.blended_pool_id = pool_id
        return pool

    def get(self, pool_id: str) -> BasePool:
        try:
            return self.pools[pool_id]
        except KeyError:
            raise UnknownPool(pool_id) from None

    @property
    def blended_pool(self) -> Optional[BlendedPool]:
        if self.blended_pool_id is None:
            return None
        return self.pools[self.blended_pool_id]

    def regional_pools(self) -> List[RegionalPool]:
        return [p for p in self.pools.values() if isinstance(p, RegionalPool)]
