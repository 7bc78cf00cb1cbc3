from __future__ import annotations
from typing import Iterable, Optional, Set
import logging

from .errors import NotAuthorized, ProtocolPaused

logger = logging.getLogger(__name__)


class ProtocolGlobals:
    """
    Capability registry, pause switch and clock shared by every pool.

    Passed explicitly to each pool and queried at the start of every
    state-changing operation.
    """
    def __init__(self, governor: str, admins: Optional[Iterable[str]] = None,
                 valid_assets: Optional[Iterable[str]] = None, now: int = 0) -> None:
        self.governor = governor
        self.admins: Set[str] = set(admins or ())
        self.valid_assets: Set[str] = set(valid_assets or ())
        self.paused: bool = False
        self.now: int = int(now)

    # capability checks
    def is_governor(self, addr: str) -> bool:
        return addr == self.governor

    def is_admin(self, addr: str) -> bool:
        return addr in self.admins or self.is_governor(addr)

    def protocol_paused(self) -> bool:
        return self.paused

    def is_valid_asset(self, asset_id: str) -> bool:
        return asset_id in self.valid_assets

    def require_active(self) -> None:
        if self.paused:
            raise ProtocolPaused()

    def require_governor(self, caller: str) -> None:
        if not self.is_governor(caller):
            raise NotAuthorized(caller, "governor")

    def require_admin(self, caller: str) -> None:
        if not self.is_admin(caller):
            raise NotAuthorized(caller, "admin")

    # governance
    def set_paused(self, caller: str, paused: bool) -> None:
        self.require_governor(caller)
        self.paused = bool(paused)
        logger.info("protocol paused=%s by %s", self.paused, caller)

    def add_admin(self, caller: str, addr: str) -> None:
        self.require_governor(caller)
        self.admins.add(addr)

    def remove_admin(self, caller: str, addr: str) -> None:
        self.require_governor(caller)
        self.admins.discard(addr)

    def add_asset(self, caller: str, asset_id: str) -> None:
        self.require_governor(caller)
        self.valid_assets.add(asset_id)

    # clock
    def advance(self, ticks: int = 1) -> int:
        if ticks < 0:
            raise ValueError("clock cannot move backwards")
        self.now += int(ticks)
        return self.now
