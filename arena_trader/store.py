"""
Persistence contract for the trading core plus two backends.

The core needs only CRUD on agents/positions, append-only logs and
last-write-wins per key. InMemoryStore backs tests and simulation;
JsonFileStore keeps the same data on disk as a state JSON file plus JSONL logs.
"""
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .config import StoreBackend, TradingConfig
from .schemas import Agent, BalanceAnomaly, BalanceSnapshot, MarketQuote, Position, TradeLogEntry

logger = logging.getLogger("arena_trader.store")


class Store(ABC):
    """Storage operations the ledger, reconciler and audit trail rely on."""

    @abstractmethod
    def get_agent(self, agent_id: str) -> Optional[Agent]:
        ...

    @abstractmethod
    def list_agents(self) -> List[Agent]:
        ...

    @abstractmethod
    def save_agent(self, agent: Agent) -> None:
        ...

    @abstractmethod
    def get_position(self, position_id: str) -> Optional[Position]:
        ...

    @abstractmethod
    def list_positions(self, agent_id: Optional[str] = None) -> List[Position]:
        ...

    @abstractmethod
    def save_position(self, position: Position) -> None:
        ...

    @abstractmethod
    def commit(
        self,
        agent: Agent,
        upsert: Iterable[Position] = (),
        remove: Iterable[str] = (),
    ) -> None:
        """Write an agent together with position changes as one unit."""

    @abstractmethod
    def append_trade(self, entry: TradeLogEntry) -> None:
        ...

    @abstractmethod
    def list_trades(self, agent_id: Optional[str] = None, limit: Optional[int] = None) -> List[TradeLogEntry]:
        """Oldest first; `limit` keeps the newest entries."""

    @abstractmethod
    def prune_trades(self, older_than: datetime) -> int:
        ...

    @abstractmethod
    def append_snapshot(self, snapshot: BalanceSnapshot) -> None:
        ...

    @abstractmethod
    def list_snapshots(self, agent_id: str, limit: Optional[int] = None) -> List[BalanceSnapshot]:
        ...

    @abstractmethod
    def append_anomaly(self, anomaly: BalanceAnomaly) -> None:
        ...

    @abstractmethod
    def list_anomalies(self, agent_id: Optional[str] = None) -> List[BalanceAnomaly]:
        ...

    @abstractmethod
    def save_market(self, quotes: List[MarketQuote]) -> None:
        ...

    @abstractmethod
    def get_market(self) -> List[MarketQuote]:
        ...


def _tail(items: list, limit: Optional[int]) -> list:
    if limit is None or limit >= len(items):
        return items
    return items[-limit:] if limit > 0 else []


class InMemoryStore(Store):
    """Thread-safe in-process store. Returned models are copies."""

    def __init__(self):
        self._lock = threading.RLock()
        self._agents: Dict[str, Agent] = {}
        self._positions: Dict[str, Position] = {}
        self._trades: List[TradeLogEntry] = []
        self._snapshots: List[BalanceSnapshot] = []
        self._anomalies: List[BalanceAnomaly] = []
        self._market: List[MarketQuote] = []

    def _persist_state(self) -> None:
        """Hook for durable backends; called with the lock held."""

    def _persist_append(self, kind: str, record) -> None:
        """Hook for durable backends; called with the lock held."""

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        with self._lock:
            agent = self._agents.get(agent_id)
            return agent.model_copy(deep=True) if agent else None

    def list_agents(self) -> List[Agent]:
        with self._lock:
            return [a.model_copy(deep=True) for a in self._agents.values()]

    def save_agent(self, agent: Agent) -> None:
        with self._lock:
            self._agents[agent.id] = agent.model_copy(deep=True)
            self._persist_state()

    def get_position(self, position_id: str) -> Optional[Position]:
        with self._lock:
            position = self._positions.get(position_id)
            return position.model_copy() if position else None

    def list_positions(self, agent_id: Optional[str] = None) -> List[Position]:
        with self._lock:
            positions = [
                p.model_copy() for p in self._positions.values()
                if agent_id is None or p.agent_id == agent_id
            ]
        return sorted(positions, key=lambda p: p.opened_at)

    def save_position(self, position: Position) -> None:
        with self._lock:
            self._positions[position.id] = position.model_copy()
            self._persist_state()

    def commit(
        self,
        agent: Agent,
        upsert: Iterable[Position] = (),
        remove: Iterable[str] = (),
    ) -> None:
        with self._lock:
            self._agents[agent.id] = agent.model_copy(deep=True)
            for position in upsert:
                self._positions[position.id] = position.model_copy()
            for position_id in remove:
                self._positions.pop(position_id, None)
            self._persist_state()

    def append_trade(self, entry: TradeLogEntry) -> None:
        with self._lock:
            self._trades.append(entry)
            self._persist_append("trades", entry)

    def list_trades(self, agent_id: Optional[str] = None, limit: Optional[int] = None) -> List[TradeLogEntry]:
        with self._lock:
            trades = [t for t in self._trades if agent_id is None or t.agent_id == agent_id]
        return _tail(trades, limit)

    def prune_trades(self, older_than: datetime) -> int:
        with self._lock:
            kept = [t for t in self._trades if t.timestamp >= older_than]
            removed = len(self._trades) - len(kept)
            self._trades = kept
            if removed:
                self._rewrite_log("trades", kept)
        return removed

    def _rewrite_log(self, kind: str, records: list) -> None:
        """Hook for durable backends; called with the lock held."""

    def append_snapshot(self, snapshot: BalanceSnapshot) -> None:
        with self._lock:
            self._snapshots.append(snapshot)
            self._persist_append("balance_snapshots", snapshot)

    def list_snapshots(self, agent_id: str, limit: Optional[int] = None) -> List[BalanceSnapshot]:
        with self._lock:
            snapshots = [s for s in self._snapshots if s.agent_id == agent_id]
        return _tail(snapshots, limit)

    def append_anomaly(self, anomaly: BalanceAnomaly) -> None:
        with self._lock:
            self._anomalies.append(anomaly)
            self._persist_append("anomalies", anomaly)

    def list_anomalies(self, agent_id: Optional[str] = None) -> List[BalanceAnomaly]:
        with self._lock:
            return [a for a in self._anomalies if agent_id is None or a.agent_id == agent_id]

    def save_market(self, quotes: List[MarketQuote]) -> None:
        with self._lock:
            self._market = [q.model_copy() for q in quotes]
            self._persist_state()

    def get_market(self) -> List[MarketQuote]:
        with self._lock:
            return [q.model_copy() for q in self._market]


class JsonFileStore(InMemoryStore):
    """
    File-backed store.

    Layout under `data_dir`:
        state.json                 agents, positions, market (rewritten atomically)
        trades.jsonl               append-only trade log
        balance_snapshots.jsonl    append-only snapshots
        anomalies.jsonl            append-only anomaly log
    """

    LOG_MODELS = {
        "trades": TradeLogEntry,
        "balance_snapshots": BalanceSnapshot,
        "anomalies": BalanceAnomaly,
    }

    def __init__(self, data_dir: str):
        super().__init__()
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.state_file = self.data_dir / "state.json"
        self._load()

    def _log_path(self, kind: str) -> Path:
        return self.data_dir / f"{kind}.jsonl"

    def _load(self):
        if self.state_file.exists():
            with open(self.state_file, "r") as f:
                state = json.load(f)
            self._agents = {a["id"]: Agent.model_validate(a) for a in state.get("agents", [])}
            self._positions = {p["id"]: Position.model_validate(p) for p in state.get("positions", [])}
            self._market = [MarketQuote.model_validate(q) for q in state.get("market", [])]

        self._trades = self._read_log("trades")
        self._snapshots = self._read_log("balance_snapshots")
        self._anomalies = self._read_log("anomalies")
        logger.info(
            f"Loaded store from {self.data_dir}: {len(self._agents)} agents, "
            f"{len(self._positions)} positions, {len(self._trades)} trades"
        )

    def _read_log(self, kind: str) -> list:
        path = self._log_path(kind)
        if not path.exists():
            return []
        model = self.LOG_MODELS[kind]
        records = []
        with open(path, "r") as f:
            for line_no, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    records.append(model.model_validate_json(line))
                except ValueError as e:
                    logger.warning(f"Skipping corrupt line {line_no} in {path.name}: {e}")
        return records

    def _write_atomic(self, path: Path, content: str) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    def _persist_state(self) -> None:
        state = {
            "agents": [a.model_dump(mode="json") for a in self._agents.values()],
            "positions": [p.model_dump(mode="json") for p in self._positions.values()],
            "market": [q.model_dump(mode="json") for q in self._market],
        }
        self._write_atomic(self.state_file, json.dumps(state, indent=2, default=str))

    def _persist_append(self, kind: str, record) -> None:
        with open(self._log_path(kind), "a") as f:
            f.write(record.model_dump_json() + "\n")

    def _rewrite_log(self, kind: str, records: list) -> None:
        content = "".join(r.model_dump_json() + "\n" for r in records)
        self._write_atomic(self._log_path(kind), content)


def create_store(config: TradingConfig) -> Store:
    """Store backend selected by STORE_BACKEND."""
    if config.store_backend == StoreBackend.JSON:
        return JsonFileStore(config.data_dir)
    return InMemoryStore()
