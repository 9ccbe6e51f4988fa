"""
Configuration for the Deriv Copy Trader
Contains API endpoints, timing constants, and copy-trading / signal parameters.
"""

import math
import os
from dataclasses import dataclass, field, asdict
from typing import Optional

from errors import ConfigError

# ============================================================================
# API ENDPOINTS
# ============================================================================

class DerivAPI:
    # WebSocket API v3
    WS_URL = "wss://ws.derivws.com/websockets/v3"
    DEFAULT_APP_ID = "1089"

    @classmethod
    def ws_url(cls, app_id: Optional[str] = None) -> str:
        return f"{cls.WS_URL}?app_id={app_id or cls.DEFAULT_APP_ID}"


# Virtual (demo) account login ids start with these
DEMO_LOGINID_PREFIXES = ("VRT", "VRW")

# ============================================================================
# TIMING
# ============================================================================

CONNECT_TIMEOUT_SEC = 10.0
REQUEST_TIMEOUT_SEC = 10.0
HEALTH_CHECK_INTERVAL_SEC = 30.0
STATUS_BROADCAST_INTERVAL_SEC = 5.0
SIGNAL_EXPIRY_CHECK_SEC = 1.0

# ============================================================================
# TRADE DEFAULTS
# ============================================================================

DEFAULT_TICK_DURATION = 5
DEFAULT_DURATION_UNIT = "t"
DEFAULT_CURRENCY = "USD"

# localStorage key the UI keeps the trader token list under
TRADER_TOKENS_KEY = "copyTradingTokens"


def mask_token(token: str) -> str:
    """Never log or return a full credential"""
    return f"{token[:10]}..."


# ============================================================================
# COPY TRADING PARAMETERS
# ============================================================================

@dataclass
class CopyTradingConfig:
    trader_tokens: list = field(default_factory=list)  # API tokens of traders to copy
    assets: Optional[list] = None  # Only copy these symbols
    min_trade_stake: Optional[float] = None
    max_trade_stake: Optional[float] = None
    trade_types: Optional[list] = None  # e.g. ["CALL", "PUT"]
    copy_ratio: float = 1.0  # Stake multiplier
    copy_to_real_account: bool = False  # Route copies to a second (real) account
    real_account_token: Optional[str] = None

    LIST_FIELDS = ("trader_tokens", "assets", "trade_types")
    NUMBER_FIELDS = ("min_trade_stake", "max_trade_stake", "copy_ratio")

    def _check_types(self) -> None:
        for name in self.LIST_FIELDS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, list):
                raise ConfigError(f"{name} must be a list")
            if value and not all(isinstance(v, str) for v in value):
                raise ConfigError(f"{name} must only contain strings")
        for name in self.NUMBER_FIELDS:
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
                raise ConfigError(f"{name} must be a number")

    def validate(self) -> None:
        """Raise ConfigError if the config cannot start a session"""
        self._check_types()
        if not self.trader_tokens:
            raise ConfigError("No trader tokens provided")
        if self.copy_to_real_account and not self.real_account_token:
            raise ConfigError("Real account token required for demo-to-real copy trading")
        if self.copy_ratio is not None and self.copy_ratio <= 0:
            raise ConfigError("Copy ratio must be positive")
        if (
            self.min_trade_stake and self.max_trade_stake
            and self.min_trade_stake > self.max_trade_stake
        ):
            raise ConfigError("Minimum stake cannot exceed maximum stake")

    @property
    def mode_label(self) -> str:
        return "DEMO → REAL" if self.copy_to_real_account else "SAME ACCOUNT TYPE"

    def to_dict(self) -> dict:
        d = asdict(self)
        d["trader_tokens"] = [mask_token(t) for t in self.trader_tokens]
        if self.real_account_token:
            d["real_account_token"] = mask_token(self.real_account_token)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "CopyTradingConfig":
        """Build from a JSON body. Numbers may arrive as strings; lists may not."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}

        for name in cls.NUMBER_FIELDS:
            value = known.get(name)
            if value is None or value == "":
                known[name] = None
                continue
            if isinstance(value, bool):
                raise ConfigError(f"{name} must be a number")
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise ConfigError(f"{name} must be a number, got {value!r}") from None
            if not math.isfinite(number):
                raise ConfigError(f"{name} must be a finite number")
            known[name] = number

        flag = known.get("copy_to_real_account", False)
        if not isinstance(flag, bool):
            raise ConfigError("copy_to_real_account must be true or false")

        try:
            config = cls(**known)
        except TypeError as e:
            raise ConfigError(f"Invalid copy trading config: {e}") from e
        # Empty allowlists mean "no filter"
        if not config.assets:
            config.assets = None
        if not config.trade_types:
            config.trade_types = None
        if config.copy_ratio is None:
            config.copy_ratio = 1.0
        if not config.copy_to_real_account:
            config.real_account_token = None
        config._check_types()
        return config


# ============================================================================
# SIGNAL PARAMETERS
# ============================================================================

@dataclass
class SignalConfig:
    symbol: str = "R_50"
    warmup_ticks: int = 10  # No signals before this many ticks
    signal_every_ticks: int = 5
    validity_sec: int = 40
    max_signals: int = 10
    stake: float = 1.0
    duration: int = DEFAULT_TICK_DURATION
    duration_unit: str = DEFAULT_DURATION_UNIT

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# APPLICATION SETTINGS
# ============================================================================

@dataclass
class AppSettings:
    app_id: str = DerivAPI.DEFAULT_APP_ID
    ws_url: Optional[str] = None
    api_token: Optional[str] = None  # Platform (primary) account token
    token_db_path: str = "copy_trading.db"
    log_dir: str = "logs"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def deriv_ws_url(self) -> str:
        return self.ws_url or DerivAPI.ws_url(self.app_id)

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Load settings from environment variables"""
        return cls(
            app_id=os.getenv("DERIV_APP_ID", DerivAPI.DEFAULT_APP_ID),
            ws_url=os.getenv("DERIV_WS_URL"),
            api_token=os.getenv("DERIV_API_TOKEN"),
            token_db_path=os.getenv("TOKEN_DB_PATH", "copy_trading.db"),
            log_dir=os.getenv("LOG_DIR", "logs"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
        )
