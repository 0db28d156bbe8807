"""
Configuration management with safety latches for trading modes.

Everything is read from environment variables once at startup; the roster of
agents is fixed for the lifetime of the process.
"""
import os
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional
from enum import Enum


class TradingMode(str, Enum):
    SIMULATED = "simulated"
    PAPER = "paper"
    LIVE = "live"


class StoreBackend(str, Enum):
    MEMORY = "memory"
    JSON = "json"


@dataclass
class RiskLimits:
    """Per-agent sizing bounds. Every agent may override any of these."""
    max_open_positions: int = 6
    max_stake_fraction: float = 0.7
    default_stake_fraction: float = 0.5
    max_stake_per_trade: float = 250.0
    min_notional: float = 110.0
    min_notional_binary: float = 1.0
    max_leverage: int = 10
    default_leverage: int = 10
    auto_raise_leverage: bool = False
    max_holding_minutes: Optional[int] = None

    def __post_init__(self):
        if self.max_leverage < 1:
            raise ValueError("max_leverage must be >= 1")
        if not 0 < self.max_stake_fraction <= 1:
            raise ValueError("max_stake_fraction must be in (0, 1]")
        if self.max_open_positions < 1:
            raise ValueError("max_open_positions must be >= 1")


@dataclass
class AgentProfile:
    """Static description of one roster member."""
    agent_id: str
    name: str
    persona: str = ""
    model: str = "gpt-4o"
    initial_balance: float = 500.0
    limits: RiskLimits = field(default_factory=RiskLimits)


DEFAULT_ROSTER: List[AgentProfile] = [
    AgentProfile(
        agent_id="gpt",
        name="GPT",
        persona="Conservative futures trader focused on capital preservation. Tight stops, small size, holds when uncertain.",
        limits=RiskLimits(max_holding_minutes=45),
    ),
    AgentProfile(
        agent_id="claude",
        name="Claude",
        persona="Balanced trader seeking at least 2:1 risk/reward with moderate leverage.",
        limits=RiskLimits(max_holding_minutes=45),
    ),
    AgentProfile(
        agent_id="deepseek",
        name="DeepSeek",
        persona="Short-horizon scalper. Quick entries and exits on momentum.",
        limits=RiskLimits(max_holding_minutes=5),
    ),
    AgentProfile(
        agent_id="grok",
        name="Grok",
        persona="Contrarian trader who fades crowded moves and adapts stops to volatility.",
        limits=RiskLimits(max_holding_minutes=45),
    ),
]


@dataclass
class TradingConfig:
    openai_api_key: str = ""
    alpaca_key_id: str = ""
    alpaca_secret_key: str = ""
    agent_credentials: Dict[str, Dict[str, str]] = field(default_factory=dict)

    trading_mode: TradingMode = TradingMode.SIMULATED
    live_trading_enabled: bool = False

    roster: List[AgentProfile] = field(default_factory=lambda: list(DEFAULT_ROSTER))

    decision_interval_seconds: int = 120
    balance_sync_seconds: int = 20
    market_refresh_seconds: int = 3600
    trade_cleanup_seconds: int = 6 * 3600
    inter_agent_pause_seconds: float = 2.0

    call_timeout_seconds: float = 60.0
    read_retry_attempts: int = 3
    read_retry_base_delay: float = 0.5

    anomaly_threshold_percent: float = 20.0
    pnl_history_length: int = 24
    trade_retention_days: int = 7
    market_top_n: int = 20
    market_ttl_seconds: int = 60
    technical_top_n: int = 5
    technical_ttl_seconds: int = 180
    intraday_interval: str = "3m"
    intraday_candles: int = 100
    long_term_interval: str = "4h"
    long_term_candles: int = 50

    store_backend: StoreBackend = StoreBackend.MEMORY
    data_dir: str = "arena_trader/data"
    log_level: str = "INFO"
    scheduler_enabled: bool = True

    def __post_init__(self):
        self._validate_safety()
        ids = [p.agent_id for p in self.roster]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate agent ids in roster: {ids}")

    def _validate_safety(self):
        """Ensure safety latches are properly configured."""
        if self.trading_mode == TradingMode.LIVE:
            if not self.live_trading_enabled:
                raise ValueError(
                    "SAFETY: Live trading requested but LIVE_TRADING_ENABLED is not true. "
                    "Both TRADING_MODE=live AND LIVE_TRADING_ENABLED=true are required."
                )

    def can_execute_orders(self) -> bool:
        """Check if order execution is allowed based on mode and latches."""
        if self.trading_mode == TradingMode.LIVE:
            return self.live_trading_enabled
        return True

    def get_mode_description(self) -> str:
        """Get human-readable description of current mode."""
        if self.trading_mode == TradingMode.SIMULATED:
            return "SIMULATED: Orders filled by the in-process simulated exchange"
        elif self.trading_mode == TradingMode.PAPER:
            return "PAPER: Orders executed against paper trading accounts"
        elif self.trading_mode == TradingMode.LIVE:
            if self.live_trading_enabled:
                return "LIVE: Real money trading ENABLED"
            return "LIVE: Blocked (LIVE_TRADING_ENABLED is false)"
        return "UNKNOWN"

    def get_profile(self, agent_id: str) -> AgentProfile:
        for profile in self.roster:
            if profile.agent_id == agent_id:
                return profile
        raise KeyError(agent_id)

    @property
    def agent_ids(self) -> List[str]:
        return [p.agent_id for p in self.roster]


def _get_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return value.lower() == "true"


def _load_limits(base: RiskLimits, prefix: str = "") -> RiskLimits:
    """Apply RISK_* overrides (optionally agent-prefixed) on top of base limits."""
    holding = os.getenv(f"{prefix}MAX_HOLDING_MINUTES")
    return replace(
        base,
        max_open_positions=_get_int(f"{prefix}MAX_OPEN_POSITIONS", base.max_open_positions),
        max_stake_fraction=_get_float(f"{prefix}MAX_STAKE_FRACTION", base.max_stake_fraction),
        default_stake_fraction=_get_float(f"{prefix}DEFAULT_STAKE_FRACTION", base.default_stake_fraction),
        max_stake_per_trade=_get_float(f"{prefix}MAX_STAKE_PER_TRADE", base.max_stake_per_trade),
        min_notional=_get_float(f"{prefix}MIN_NOTIONAL", base.min_notional),
        min_notional_binary=_get_float(f"{prefix}MIN_NOTIONAL_BINARY", base.min_notional_binary),
        max_leverage=_get_int(f"{prefix}MAX_LEVERAGE", base.max_leverage),
        default_leverage=_get_int(f"{prefix}DEFAULT_LEVERAGE", base.default_leverage),
        auto_raise_leverage=_get_bool(f"{prefix}AUTO_RAISE_LEVERAGE", base.auto_raise_leverage),
        max_holding_minutes=int(holding) if holding and holding.isdigit() else base.max_holding_minutes,
    )


def _load_roster() -> List[AgentProfile]:
    """Select roster members from AGENT_ROSTER and apply risk overrides."""
    roster_str = os.getenv("AGENT_ROSTER", "")
    wanted = [s.strip().lower() for s in roster_str.split(",") if s.strip()]
    initial_balance = _get_float("INITIAL_BALANCE", 500.0)

    roster = []
    for profile in DEFAULT_ROSTER:
        if wanted and profile.agent_id not in wanted:
            continue
        limits = _load_limits(profile.limits, "RISK_")
        limits = _load_limits(limits, f"{profile.agent_id.upper()}_RISK_")
        roster.append(replace(profile, initial_balance=initial_balance, limits=limits))
    return roster


def _load_agent_credentials(roster: List[AgentProfile]) -> Dict[str, Dict[str, str]]:
    """Per-agent exchange keys: ALPACA_KEY_ID_<AGENT> / ALPACA_SECRET_KEY_<AGENT>."""
    credentials = {}
    for profile in roster:
        suffix = profile.agent_id.upper()
        key_id = os.getenv(f"ALPACA_KEY_ID_{suffix}", "")
        secret = os.getenv(f"ALPACA_SECRET_KEY_{suffix}", "")
        if key_id and secret:
            credentials[profile.agent_id] = {"key_id": key_id, "secret_key": secret}
    return credentials


def load_config() -> TradingConfig:
    """Load configuration from environment variables."""
    mode_str = os.getenv("TRADING_MODE", "simulated").lower()
    try:
        trading_mode = TradingMode(mode_str)
    except ValueError:
        trading_mode = TradingMode.SIMULATED

    live_enabled = os.getenv("LIVE_TRADING_ENABLED", "false").lower() == "true"

    backend_str = os.getenv("STORE_BACKEND", "memory").lower()
    try:
        store_backend = StoreBackend(backend_str)
    except ValueError:
        store_backend = StoreBackend.MEMORY

    roster = _load_roster()

    return TradingConfig(
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        alpaca_key_id=os.getenv("ALPACA_KEY_ID", ""),
        alpaca_secret_key=os.getenv("ALPACA_SECRET_KEY", ""),
        agent_credentials=_load_agent_credentials(roster),
        trading_mode=trading_mode,
        live_trading_enabled=live_enabled,
        roster=roster,
        decision_interval_seconds=_get_int("DECISION_INTERVAL_SECONDS", 120),
        balance_sync_seconds=_get_int("BALANCE_SYNC_SECONDS", 20),
        market_refresh_seconds=_get_int("MARKET_REFRESH_SECONDS", 3600),
        trade_cleanup_seconds=_get_int("TRADE_CLEANUP_SECONDS", 6 * 3600),
        inter_agent_pause_seconds=_get_float("INTER_AGENT_PAUSE_SECONDS", 2.0),
        call_timeout_seconds=_get_float("CALL_TIMEOUT_SECONDS", 60.0),
        read_retry_attempts=_get_int("READ_RETRY_ATTEMPTS", 3),
        read_retry_base_delay=_get_float("READ_RETRY_BASE_DELAY", 0.5),
        anomaly_threshold_percent=_get_float("ANOMALY_THRESHOLD_PERCENT", 20.0),
        pnl_history_length=_get_int("PNL_HISTORY_LENGTH", 24),
        trade_retention_days=_get_int("TRADE_RETENTION_DAYS", 7),
        market_top_n=_get_int("MARKET_TOP_N", 20),
        market_ttl_seconds=_get_int("MARKET_TTL_SECONDS", 60),
        technical_top_n=_get_int("TECHNICAL_TOP_N", 5),
        technical_ttl_seconds=_get_int("TECHNICAL_TTL_SECONDS", 180),
        intraday_interval=os.getenv("INTRADAY_INTERVAL", "3m"),
        intraday_candles=_get_int("INTRADAY_CANDLES", 100),
        long_term_interval=os.getenv("LONG_TERM_INTERVAL", "4h"),
        long_term_candles=_get_int("LONG_TERM_CANDLES", 50),
        store_backend=store_backend,
        data_dir=os.getenv("DATA_DIR", "arena_trader/data"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        scheduler_enabled=_get_bool("SCHEDULER_ENABLED", True),
    )
