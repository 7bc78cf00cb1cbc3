from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List
import pandas as pd

from .core import Event

@dataclass
class MetricsStore:
    """Per-tick network rows and per-pool snapshot rows, exposed as DataFrames."""
    network_rows: List[Dict[str, Any]] = field(default_factory=list)
    pool_rows: List[Dict[str, Any]] = field(default_factory=list)

    def add_network(self, row: Dict[str, Any]) -> None:
        self.network_rows.append(row)

    def add_pool_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.pool_rows.extend(rows)

    def has_tick(self, tick: int) -> bool:
        return bool(self.network_rows) and self.network_rows[-1].get("tick") == tick

    def network_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.network_rows)

    def pool_df(self) -> pd.DataFrame:
        df = pd.DataFrame(self.pool_rows)
        if df.empty:
            return df
        assets = df["locker"] + df["principal_outstanding"]
        df["utilization"] = (df["principal_outstanding"] / assets.where(assets > 0)).fillna(0.0)
        return df

    def pool_history(self, pool_id: str) -> pd.DataFrame:
        df = self.pool_df()
        if df.empty:
            return df
        return df[df["pool_id"] == pool_id].set_index("tick")

    def latest_pools(self) -> pd.DataFrame:
        df = self.pool_df()
        if df.empty:
            return df
        return df[df["tick"] == df["tick"].max()].set_index("pool_id")

    def settlement_backlog(self) -> pd.DataFrame:
        """Pending totals per tick, summed over pools."""
        df = self.pool_df()
        cols = ["pending_withdrawal", "pending_reward", "pending_yield"]
        if df.empty:
            return pd.DataFrame(columns=cols)
        return df.groupby("tick")[cols].sum()


def events_df(events: Iterable[Event]) -> pd.DataFrame:
    rows = [
        {"tick": e.tick, "event_type": e.event_type, "actor_id": e.actor_id,
         "pool_id": e.pool_id, "amount": e.amount}
        for e in events
    ]
    return pd.DataFrame(rows, columns=["tick", "event_type", "actor_id", "pool_id", "amount"])


def event_counts(events: Iterable[Event]) -> pd.DataFrame:
    """Count of events per (tick, event_type), wide by type."""
    df = events_df(events)
    if df.empty:
        return df
    return df.groupby(["tick", "event_type"]).size().unstack(fill_value=0)
