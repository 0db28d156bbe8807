"""
OpenAIDecisionProvider - LLM-backed trade decisions.

Purpose: Turn one agent's context into a raw JSON decision. The payload is
returned untouched; validation and sizing happen in the execution engine.
"""
import logging
from typing import Any, Dict, Optional

from openai import OpenAI

from ..errors import ExecutionFailure
from ..schemas import DecisionContext, IntervalIndicators, TechnicalSnapshot
from .base import DecisionProvider

logger = logging.getLogger("arena_trader.clients.openai")

RESPONSE_RULES = """RESPONSE FORMAT (JSON only):
{
  "message": "1-3 sentence conversational summary of what you are doing",
  "action": "LONG|SHORT|CLOSE|HOLD",
  "symbol": "BTCUSDT",
  "size": 100,
  "leverage": 10,
  "stopLoss": 43650,
  "takeProfit": 47250,
  "reasoning": "Technical explanation mentioning risk/reward"
}

RULES:
- LONG/SHORT require stopLoss and takeProfit.
- stopLoss for LONG is BELOW the current price, takeProfit ABOVE it; the reverse for SHORT.
- For CLOSE, "symbol" is the instrument of the position to close (or give "position_id").
- For HOLD, omit symbol, size, leverage, stopLoss and takeProfit.
- "size" is collateral in USD, not notional."""


def _num(value: Optional[float], spec: str = ",.4f") -> str:
    return "n/a" if value is None else format(value, spec)


def _format_interval(ind: IntervalIndicators) -> str:
    closes = ", ".join(_num(c, ".4f") for c in ind.recent_closes)
    return (
        f"    [{ind.interval}] EMA20 {_num(ind.ema20)} | EMA50 {_num(ind.ema50)} | "
        f"MACD {_num(ind.macd)} (signal {_num(ind.macd_signal)}, hist {_num(ind.macd_histogram)}) | "
        f"RSI7 {_num(ind.rsi7, '.1f')} | RSI14 {_num(ind.rsi14, '.1f')} | "
        f"ATR3 {_num(ind.atr3)} | ATR14 {_num(ind.atr14)} | "
        f"Volume {ind.current_volume:,.0f} vs avg {ind.avg_volume:,.0f}\n"
        f"    [{ind.interval}] Recent closes (oldest first): {closes or 'n/a'}"
    )


def format_technical(technical: Dict[str, TechnicalSnapshot]) -> str:
    """Render indicator snapshots for the prompt, one block per instrument."""
    if not technical:
        return "  (no technical data)"
    blocks = []
    for instrument, snap in technical.items():
        lines = [f"  - {instrument} @ ${snap.current_price:,.4f}"]
        for ind in (snap.intraday, snap.long_term):
            if ind is not None:
                lines.append(_format_interval(ind))
        blocks.append("\n".join(lines))
    return "\n".join(blocks)


class OpenAIDecisionProvider(DecisionProvider):
    """Persona-driven decisions via chat completions in JSON mode."""

    provider_name = "openai"

    def __init__(self, api_key: str, persona: str, model: str = "gpt-4o", temperature: float = 0.8):
        self.client = OpenAI(api_key=api_key)
        self.persona = persona
        self.model = model
        self.temperature = temperature

    def get_decision(self, agent_id: str, context: DecisionContext) -> Any:
        prompt = self._build_prompt(context)

        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": self.persona},
                {"role": "user", "content": prompt},
            ],
            temperature=self.temperature,
            max_tokens=600,
            response_format={"type": "json_object"},
        )

        content = response.choices[0].message.content
        if content is None:
            raise ExecutionFailure("Empty LLM response", operation="get_decision")
        logger.debug(f"[{agent_id}] raw decision: {content}")
        return content.strip()

    def _build_prompt(self, context: DecisionContext) -> str:
        """Build the user prompt for the LLM."""
        positions_text = "None" if not context.positions else "\n".join(
            f"  - [{p.id}] {p.instrument}: {p.direction} {p.quantity} @ ${p.entry_price:.2f} "
            f"{p.leverage}x | Mark: ${p.mark_price:.2f} | "
            f"Unrealized P&L: ${p.unrealized_pnl:.2f} ({p.unrealized_pnl_percent:.2f}%)"
            for p in context.positions
        )

        quotes_text = "\n".join(
            f"  - {q.instrument}: ${q.price:,.4f} (24h {q.change_24h:+.2f}%, vol ${q.volume:,.0f})"
            for q in context.quotes
        ) or "  (no market data)"

        return f"""ACCOUNT PERFORMANCE:
- Total Return: {context.total_return:.2f}%
- Available Cash: ${context.cash_balance:.2f}
- Current Account Value: ${context.account_value:.2f}
- Open Positions: {len(context.positions)}

YOUR CURRENT POSITIONS:
{positions_text}

MARKET:
{quotes_text}

TECHNICAL ANALYSIS:
{format_technical(context.technical)}

TRADING RULES:
- Maximum {context.max_open_positions} positions at once
- Maximum stake: {context.max_stake_fraction * 100:.0f}% of available cash
- Maximum leverage: {context.max_leverage}x
- Tradable instruments: {", ".join(context.available_instruments) or "none"}

{RESPONSE_RULES}"""
