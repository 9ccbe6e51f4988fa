"""
Signal Feed - tick-driven trading signals with a short validity window.

Ticks from the platform's tick stream are fed to a SignalAnalyzer. After a
warm-up, every Nth tick asks the analyzer for a signal; produced signals are
kept newest-first in a bounded list and dropped once they expire. The latest
signal can be auto-traded with a fixed stake and tick duration.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, asdict
from typing import Any, Callable, Optional

from config import SIGNAL_EXPIRY_CHECK_SEC, SignalConfig
from errors import CopyTradingError, SubscriptionError
from replicator import place_contract

logger = logging.getLogger(__name__)


@dataclass
class Signal:
    """A trading signal shown to the user until it expires"""
    id: str
    timestamp: int  # ms
    market: str
    type: str  # RISE, FALL, EVEN, ODD, OVER n, UNDER n
    confidence: str  # HIGH, MEDIUM, LOW
    strategy: str
    entry: Optional[float] = None
    validity_duration: Optional[int] = None  # seconds
    expires_at: Optional[int] = None  # ms

    def remaining_time(self, now_ms: int) -> Optional[int]:
        """Whole seconds left, or None for signals without a validity window"""
        if self.expires_at is None:
            return None
        return max(0, (self.expires_at - now_ms) // 1000)

    def is_expired(self, now_ms: int) -> bool:
        """Signals without a validity window count as expired"""
        remaining = self.remaining_time(now_ms)
        return remaining is None or remaining <= 0

    def to_dict(self, now_ms: Optional[int] = None) -> dict:
        d = asdict(self)
        d["remaining_time"] = self.remaining_time(now_ms if now_ms is not None else int(time.time() * 1000))
        return d


# ============================================================================
# ANALYZERS
# ============================================================================

class SignalAnalyzer(ABC):
    """
    Turns a tick history into at most one signal per call.

    generate_signal() returns {"type", "confidence", "strategy"} or None.
    """

    @abstractmethod
    def add_tick(self, quote: float, epoch: int) -> None:
        pass

    @abstractmethod
    def generate_signal(self) -> Optional[dict]:
        pass


class TickTrendAnalyzer(SignalAnalyzer):
    """
    Simple built-in analyzer.

    Trend: if at least `trend_threshold` of the last `window` tick moves go
    the same way, signal RISE/FALL. Otherwise, if the last digits of the
    window's quotes lean even or odd by `parity_threshold`, signal EVEN/ODD.
    """

    def __init__(self, window: int = 10, trend_threshold: int = 7, parity_threshold: int = 7, decimals: int = 4):
        self.window = window
        self.trend_threshold = trend_threshold
        self.parity_threshold = parity_threshold
        self.decimals = decimals
        self._quotes: deque = deque(maxlen=window + 1)

    def add_tick(self, quote: float, epoch: int) -> None:
        self._quotes.append(quote)

    def last_digit(self, quote: float) -> int:
        return int(round(quote * 10 ** self.decimals)) % 10

    def generate_signal(self) -> Optional[dict]:
        quotes = list(self._quotes)
        if len(quotes) < self.window + 1:
            return None

        moves = [b - a for a, b in zip(quotes, quotes[1:])]
        ups = sum(1 for m in moves if m > 0)
        downs = sum(1 for m in moves if m < 0)

        if ups >= self.trend_threshold or downs >= self.trend_threshold:
            strength = max(ups, downs)
            return {
                "type": "RISE" if ups > downs else "FALL",
                "confidence": "HIGH" if strength >= self.window - 1 else "MEDIUM",
                "strategy": "Trend Momentum",
            }

        evens = sum(1 for q in quotes[1:] if self.last_digit(q) % 2 == 0)
        odds = self.window - evens
        if evens >= self.parity_threshold or odds >= self.parity_threshold:
            return {
                "type": "EVEN" if evens > odds else "ODD",
                "confidence": "MEDIUM",
                "strategy": "Digit Parity",
            }

        return None


# ============================================================================
# FEED
# ============================================================================

class SignalFeed:
    """Bounded, self-expiring list of recent signals for one market."""

    def __init__(
        self,
        analyzer: SignalAnalyzer,
        config: Optional[SignalConfig] = None,
        clock: Callable[[], float] = time.time,
        on_signal: Optional[Callable[[Signal], None]] = None,
    ):
        self.analyzer = analyzer
        self.config = config or SignalConfig()
        self._clock = clock
        self.on_signal = on_signal

        self.signals: list[Signal] = []  # newest first
        self.tick_count = 0
        self.is_connected = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._running = False

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def on_tick(self, tick: dict) -> Optional[Signal]:
        """Feed one tick ({"quote", "epoch"}); returns a signal if one was produced."""
        quote = tick.get("quote")
        epoch = tick.get("epoch")
        if not quote or not epoch:
            return None

        self.tick_count += 1
        self.is_connected = True
        self.analyzer.add_tick(float(quote), int(epoch))
        logger.debug(f"[Signals] Tick {self.tick_count}: {quote}")

        cfg = self.config
        if self.tick_count < cfg.warmup_ticks or self.tick_count % cfg.signal_every_ticks != 0:
            return None

        result = self.analyzer.generate_signal()
        if not result:
            logger.debug("[Signals] No signal generated from analysis")
            return None

        now = self._now_ms()
        signal = Signal(
            id=f"signal-{now}",
            timestamp=now,
            market=cfg.symbol,
            type=result["type"],
            confidence=result["confidence"],
            strategy=result["strategy"],
            entry=float(quote),
            validity_duration=cfg.validity_sec,
            expires_at=now + cfg.validity_sec * 1000,
        )
        self.signals = [signal] + self.signals[: cfg.max_signals - 1]
        logger.info(f"[Signals] {signal.type} on {signal.market} ({signal.confidence}, {signal.strategy})")

        if self.on_signal:
            self.on_signal(signal)
        return signal

    def prune_expired(self) -> int:
        """Drop signals with no whole seconds left. Returns how many were dropped."""
        now = self._now_ms()
        before = len(self.signals)
        self.signals = [s for s in self.signals if not s.is_expired(now)]
        return before - len(self.signals)

    def latest(self) -> Optional[Signal]:
        return self.signals[0] if self.signals else None

    def get_signals(self) -> list[dict]:
        now = self._now_ms()
        return [s.to_dict(now) for s in self.signals]

    def get_status(self) -> dict:
        return {
            "market": self.config.symbol,
            "is_connected": self.is_connected,
            "tick_count": self.tick_count,
            "warmup_ticks": self.config.warmup_ticks,
            "signals": self.get_signals(),
        }

    async def subscribe(self, api: Any, symbol: Optional[str] = None):
        """Subscribe to the tick stream on the platform connection"""
        symbol = symbol or self.config.symbol

        def handle(data: dict):
            tick = data.get("tick") if data.get("msg_type") == "tick" else None
            if tick and tick.get("symbol", symbol) == symbol:
                self.on_tick(tick)

        self._unsubscribe = api.on_message(handle)
        logger.info(f"[Signals] Subscribing to {symbol} ticks for signal generation...")
        response = await api.send({"ticks": symbol, "subscribe": 1})
        if response.get("error"):
            self.unsubscribe()
            self.is_connected = False
            raise SubscriptionError.from_response(response, f"Tick subscription for {symbol} rejected")

    def unsubscribe(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    async def run_expiry_loop(self, interval: float = SIGNAL_EXPIRY_CHECK_SEC):
        """Prune expired signals once per interval until stop()"""
        self._running = True
        while self._running:
            await asyncio.sleep(interval)
            self.prune_expired()

    def stop(self):
        self._running = False
        self.unsubscribe()


# ============================================================================
# AUTO TRADER
# ============================================================================

DIRECTIONAL_CONTRACTS = {
    "RISE": "CALL",
    "FALL": "PUT",
    "EVEN": "DIGITEVEN",
    "ODD": "DIGITODD",
}

BARRIER_CONTRACTS = {
    "OVER": "DIGITOVER",
    "UNDER": "DIGITUNDER",
}


def contract_for_signal(signal_type: str) -> tuple[str, Optional[str]]:
    """Map a signal type to (contract_type, barrier). "OVER 3" / "OVER_3" carry a digit barrier."""
    normalized = signal_type.upper().replace("_", " ").strip()
    if normalized in DIRECTIONAL_CONTRACTS:
        return DIRECTIONAL_CONTRACTS[normalized], None

    for prefix, contract_type in BARRIER_CONTRACTS.items():
        if normalized.startswith(prefix):
            digit = normalized[len(prefix):].strip()
            if digit.isdigit() and len(digit) == 1:
                return contract_type, digit

    raise ValueError(f"Unsupported signal type: {signal_type}")


@dataclass
class SignalTradeResult:
    success: bool
    signal_id: Optional[str] = None
    contract_id: Optional[int] = None
    buy_price: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class SignalAutoTrader:
    """Fires one trade on the latest signal; one trade in flight at a time."""

    def __init__(self, api: Any, config: Optional[SignalConfig] = None, currency: str = "USD"):
        self.api = api
        self.config = config or SignalConfig()
        self.currency = currency
        self.is_trading = False

    def build_proposal(self, signal: Signal, stake: Optional[float] = None) -> dict:
        contract_type, barrier = contract_for_signal(signal.type)
        proposal = {
            "proposal": 1,
            "amount": stake if stake is not None else self.config.stake,
            "basis": "stake",
            "contract_type": contract_type,
            "currency": self.currency,
            "duration": self.config.duration,
            "duration_unit": self.config.duration_unit,
            "symbol": signal.market,
        }
        if barrier is not None:
            proposal["barrier"] = barrier
        return proposal

    async def execute_latest(self, feed: SignalFeed, stake: Optional[float] = None) -> SignalTradeResult:
        if self.is_trading:
            return SignalTradeResult(success=False, error="A signal trade is already in progress")

        signal = feed.latest()
        if signal is None:
            logger.warning("[Signals] No signals available to trade")
            return SignalTradeResult(success=False, error="No signals available to trade")

        if self.api is None:
            return SignalTradeResult(success=False, signal_id=signal.id, error="API not connected")

        try:
            proposal = self.build_proposal(signal, stake)
        except ValueError as e:
            return SignalTradeResult(success=False, signal_id=signal.id, error=str(e))

        self.is_trading = True
        logger.info(f"[Signals] Trading signal {signal.id}: {proposal}")
        try:
            bought = await place_contract(self.api, proposal)
        except CopyTradingError as e:
            logger.error(f"[Signals] Trade failed: {type(e).__name__}: {e}")
            return SignalTradeResult(success=False, signal_id=signal.id, error=str(e))
        finally:
            self.is_trading = False

        logger.info(f"[Signals] Trade placed: contract {bought.get('contract_id')}")
        return SignalTradeResult(
            success=True,
            signal_id=signal.id,
            contract_id=bought.get("contract_id"),
            buy_price=bought.get("buy_price"),
        )
