"""
Configuration and safety latch tests.
"""
import pytest

from arena_trader.config import AgentProfile, StoreBackend, TradingConfig, TradingMode, load_config

ENV_KEYS = [
    "TRADING_MODE", "LIVE_TRADING_ENABLED", "AGENT_ROSTER", "INITIAL_BALANCE", "STORE_BACKEND",
    "DECISION_INTERVAL_SECONDS", "ANOMALY_THRESHOLD_PERCENT", "OPENAI_API_KEY",
    "RISK_MAX_LEVERAGE", "GPT_RISK_MAX_LEVERAGE", "RISK_AUTO_RAISE_LEVERAGE", "GROK_RISK_MAX_HOLDING_MINUTES",
    "ALPACA_KEY_ID_GPT", "ALPACA_SECRET_KEY_GPT", "SCHEDULER_ENABLED",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestSafetyLatch:

    def test_defaults_to_simulated(self):
        cfg = load_config()
        assert cfg.trading_mode == TradingMode.SIMULATED
        assert cfg.can_execute_orders()

    def test_live_requires_explicit_enable(self, monkeypatch):
        monkeypatch.setenv("TRADING_MODE", "live")
        with pytest.raises(ValueError, match="SAFETY"):
            load_config()

    def test_live_with_latch(self, monkeypatch):
        monkeypatch.setenv("TRADING_MODE", "live")
        monkeypatch.setenv("LIVE_TRADING_ENABLED", "true")
        cfg = load_config()
        assert cfg.trading_mode == TradingMode.LIVE
        assert cfg.can_execute_orders()
        assert "ENABLED" in cfg.get_mode_description()

    def test_unknown_mode_falls_back_to_simulated(self, monkeypatch):
        monkeypatch.setenv("TRADING_MODE", "yolo")
        assert load_config().trading_mode == TradingMode.SIMULATED


class TestRoster:

    def test_default_roster(self):
        cfg = load_config()
        assert cfg.agent_ids == ["gpt", "claude", "deepseek", "grok"]
        assert cfg.get_profile("deepseek").limits.max_holding_minutes == 5

    def test_roster_selection(self, monkeypatch):
        monkeypatch.setenv("AGENT_ROSTER", "grok, GPT")
        monkeypatch.setenv("INITIAL_BALANCE", "1000")
        cfg = load_config()
        assert cfg.agent_ids == ["gpt", "grok"]
        assert all(p.initial_balance == 1000.0 for p in cfg.roster)

    def test_global_and_per_agent_risk_overrides(self, monkeypatch):
        monkeypatch.setenv("RISK_MAX_LEVERAGE", "5")
        monkeypatch.setenv("GPT_RISK_MAX_LEVERAGE", "3")
        monkeypatch.setenv("RISK_AUTO_RAISE_LEVERAGE", "true")
        monkeypatch.setenv("GROK_RISK_MAX_HOLDING_MINUTES", "90")
        cfg = load_config()

        assert cfg.get_profile("gpt").limits.max_leverage == 3
        assert cfg.get_profile("claude").limits.max_leverage == 5
        assert cfg.get_profile("claude").limits.auto_raise_leverage
        assert cfg.get_profile("grok").limits.max_holding_minutes == 90

    def test_per_agent_credentials(self, monkeypatch):
        monkeypatch.setenv("ALPACA_KEY_ID_GPT", "key")
        monkeypatch.setenv("ALPACA_SECRET_KEY_GPT", "secret")
        cfg = load_config()
        assert cfg.agent_credentials == {"gpt": {"key_id": "key", "secret_key": "secret"}}

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError, match="Duplicate"):
            TradingConfig(roster=[AgentProfile(agent_id="a", name="A"), AgentProfile(agent_id="a", name="B")])

    def test_unknown_profile(self):
        with pytest.raises(KeyError):
            TradingConfig().get_profile("nobody")


class TestEnvParsing:

    def test_numeric_overrides(self, monkeypatch):
        monkeypatch.setenv("DECISION_INTERVAL_SECONDS", "30")
        monkeypatch.setenv("ANOMALY_THRESHOLD_PERCENT", "15.5")
        cfg = load_config()
        assert cfg.decision_interval_seconds == 30
        assert cfg.anomaly_threshold_percent == 15.5

    def test_bad_numbers_use_defaults(self, monkeypatch):
        monkeypatch.setenv("DECISION_INTERVAL_SECONDS", "soon")
        assert load_config().decision_interval_seconds == 120

    def test_store_backend_and_scheduler(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "json")
        monkeypatch.setenv("SCHEDULER_ENABLED", "false")
        cfg = load_config()
        assert cfg.store_backend == StoreBackend.JSON
        assert not cfg.scheduler_enabled
