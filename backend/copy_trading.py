"""
Copy Trading Controller - mirrors other accounts' trades onto ours.

Flow:
1. start(config) connects the mirror account (optional) and every trader
2. Each trader's transaction feed goes through dedupe -> buy-only -> filters
3. Accepted transactions are replicated (proposal + buy) on the mirror
   connection if mirroring, otherwise on the platform connection
4. Each bought contract is monitored until sold to accumulate profit
5. A periodic sweep reconnects traders whose socket dropped

One instance per session owner; dependencies are injected so tests can
build an isolated controller with fake transports.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Any, Callable, Optional

from config import (
    CONNECT_TIMEOUT_SEC,
    HEALTH_CHECK_INTERVAL_SEC,
    CopyTradingConfig,
    mask_token,
)
from contract_monitor import ContractMonitor
from deriv_client import DerivConnection
from errors import (
    AlreadyActiveError,
    ConfigError,
    ConnectivityError,
    CopyTradingError,
    NoTradersConnectedError,
)
from health import connection_monitor
from replicator import TradeReplicator
from trader_connection import AccountType, TraderConnection
from transaction_filter import is_new_position, should_copy_trade, source_stake

logger = logging.getLogger(__name__)


class ControllerState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


@dataclass
class OperationResult:
    """Outcome of start()/stop() as shown to the user."""
    success: bool
    message: str
    error: Optional[str] = None  # Error class name on failure

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def failure(cls, error: Exception) -> "OperationResult":
        return cls(
            success=False,
            message=str(error) or "Unknown error occurred",
            error=type(error).__name__,
        )


class CopyTradingController:
    """
    Owns the trader connections, the processed-transaction set and the
    copied-trade counters for one copy-trading session at a time.
    """

    def __init__(
        self,
        api: Any = None,
        connection_factory: Optional[Callable[[str], Any]] = None,
        health_check_interval: float = HEALTH_CHECK_INTERVAL_SEC,
        connect_timeout: float = CONNECT_TIMEOUT_SEC,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            api: Platform connection used for the primary (non-mirror) path.
                 Must provide send(request) and on_message(listener).
            connection_factory: Builds a fresh transport for a connection name
            health_check_interval: Seconds between reconnection sweeps
            connect_timeout: Bound on each trader's open + login handshake
            clock: Time source for last_copied_trade
        """
        self._api = api
        self._connection_factory = connection_factory or (lambda name: DerivConnection(name=name))
        self.health_check_interval = health_check_interval
        self.connect_timeout = connect_timeout
        self._clock = clock

        self.state = ControllerState.IDLE
        self.config: Optional[CopyTradingConfig] = None
        self.copied_trades = 0
        self.total_profit = 0.0
        self.last_copied_trade: Optional[str] = None

        self._connections: dict[str, TraderConnection] = {}
        self._mirror: Optional[TraderConnection] = None
        self._processed: set[str] = set()  # "token-transaction_id"
        self._known_tokens: set[str] = set()  # Authorized at least once this session
        self._reconnecting: set[str] = set()
        self._replicator: Optional[TradeReplicator] = None

        # Bumped on every start/stop so late completions from an old session are ignored
        self._session = 0
        self._health_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

    def set_api(self, api: Any) -> None:
        """Set the platform connection after construction."""
        self._api = api

    # -------------------------------------------------------------------------
    # START / STOP
    # -------------------------------------------------------------------------

    async def start(self, config: CopyTradingConfig) -> OperationResult:
        """Connect to every trader and begin replicating their purchases."""
        if self.state != ControllerState.IDLE:
            return OperationResult.failure(AlreadyActiveError("Copy trading is already running"))

        try:
            config.validate()
            if self._api is None:
                raise ConnectivityError("API not connected. Please login first.")
        except CopyTradingError as e:
            logger.warning(f"[CopyTrading] Start rejected: {e}")
            return OperationResult.failure(e)

        self.state = ControllerState.STARTING
        session = self._session
        logger.info(f"[CopyTrading] Starting with config: {config.to_dict()}")

        try:
            if config.copy_to_real_account:
                mirror = await self._connect_mirror(config.real_account_token)
                if self._start_interrupted(session):
                    await mirror.close()
                    return self._interrupted_result()
                self._mirror = mirror
                logger.info(f"[CopyTrading] Connected to real account {mirror.loginid} for copying")

            for token in dict.fromkeys(config.trader_tokens):
                if self._start_interrupted(session):
                    return self._interrupted_result()
                try:
                    trader = await self._connect_trader(token)
                except CopyTradingError as e:
                    logger.warning(f"[CopyTrading] Failed to connect to trader {mask_token(token)}: {e}")
                    continue
                if self._start_interrupted(session):
                    await trader.close()
                    return self._interrupted_result()
                self._connections[token] = trader
                self._known_tokens.add(token)

            if not self._connections:
                raise NoTradersConnectedError("Failed to connect to any traders. Please check the tokens.")

        except CopyTradingError as e:
            if self._start_interrupted(session):
                # stop() already closed and reset everything registered so far
                return OperationResult.failure(e)
            try:
                await self._close_all()
            except Exception as close_error:
                logger.error(f"[CopyTrading] Cleanup after failed start raised: {close_error}")
            self._reset()
            logger.error(f"[CopyTrading] Start failed: {type(e).__name__}: {e}")
            return OperationResult.failure(e)

        self._session += 1
        self.config = config
        self._replicator = TradeReplicator(copy_ratio=config.copy_ratio)
        self.copied_trades = 0
        self.total_profit = 0.0
        self.last_copied_trade = None
        self.state = ControllerState.ACTIVE
        self._health_task = asyncio.create_task(self._health_loop())

        message = (
            f"Copy trading started ({config.mode_label}). "
            f"Monitoring {len(self._connections)} trader(s)"
        )
        logger.info(f"[CopyTrading] {message}")
        return OperationResult(success=True, message=message)

    def _start_interrupted(self, session: int) -> bool:
        """stop() ran while start() was waiting on a login"""
        return self._session != session or self.state != ControllerState.STARTING

    def _interrupted_result(self) -> OperationResult:
        logger.warning("[CopyTrading] Stopped while starting; discarding new connections")
        return OperationResult.failure(
            CopyTradingError("Copy trading was stopped before it finished starting")
        )

    async def stop(self) -> OperationResult:
        """Close every connection and reset the session. Never raises."""
        logger.info("[CopyTrading] Stopping copy trading...")
        self.state = ControllerState.STOPPING
        self._session += 1

        # Let an in-flight reconnect close its own connection before tearing down
        health_task, self._health_task = self._health_task, None
        if health_task:
            health_task.cancel()
            try:
                await health_task
            except asyncio.CancelledError:
                pass

        try:
            await self._close_all()
        except Exception as e:
            logger.error(f"[CopyTrading] Error stopping copy trading: {e}")
            return OperationResult.failure(e)
        finally:
            self._reset()

        logger.info("[CopyTrading] Copy trading stopped successfully")
        return OperationResult(success=True, message="Copy trading stopped successfully")

    def _reset(self):
        self.state = ControllerState.IDLE
        self.config = None
        self.copied_trades = 0
        self.total_profit = 0.0
        self.last_copied_trade = None
        self._connections.clear()
        self._mirror = None
        self._processed.clear()
        self._known_tokens.clear()
        self._reconnecting.clear()
        self._replicator = None

    async def _close_all(self):
        """Close mirror and trader connections; re-raise the first close failure"""
        closing = list(self._connections.values())
        if self._mirror:
            closing.append(self._mirror)

        first_error: Optional[Exception] = None
        for connection in closing:
            try:
                await connection.close()
            except Exception as e:
                logger.error(f"[CopyTrading] Failed to close {connection.masked_token}: {e}")
                first_error = first_error or e
            connection_monitor.forget(connection.transport.name)

        self._connections.clear()
        self._mirror = None

        if first_error:
            raise first_error

    # -------------------------------------------------------------------------
    # CONNECTIONS
    # -------------------------------------------------------------------------

    async def _connect_trader(self, token: str) -> TraderConnection:
        trader = TraderConnection(
            token,
            self._connection_factory(f"trader:{mask_token(token)}"),
            on_transaction=self._on_transaction,
            on_closed=self._on_trader_closed,
            connect_timeout=self.connect_timeout,
        )
        await trader.connect()
        logger.info(
            f"[CopyTrading] Trader {trader.loginid} connected "
            f"({trader.account_type.value.upper()})"
        )
        return trader

    async def _connect_mirror(self, token: str) -> TraderConnection:
        mirror = TraderConnection(
            token,
            self._connection_factory("mirror"),
            on_closed=self._on_mirror_closed,
            subscribe=False,
            connect_timeout=self.connect_timeout,
        )
        try:
            await mirror.connect()
        except CopyTradingError as e:
            raise type(e)(f"Failed to connect to real account. Please check the token. ({e})", code=e.code) from e

        if mirror.account_type != AccountType.REAL:
            await mirror.close()
            raise ConfigError(f"Provided token is not a real account ({mirror.loginid})")

        return mirror

    def _on_trader_closed(self, trader: TraderConnection):
        if self._connections.get(trader.token) is trader:
            del self._connections[trader.token]
            logger.info(f"[CopyTrading] Trader {trader.loginid or trader.masked_token} disconnected")

    def _on_mirror_closed(self, mirror: TraderConnection):
        if self._mirror is mirror:
            logger.warning(f"[CopyTrading] Real account connection {mirror.loginid} closed")

    async def _health_loop(self):
        while self.state == ControllerState.ACTIVE:
            await asyncio.sleep(self.health_check_interval)
            try:
                await self.check_connections()
            except Exception as e:
                logger.error(f"[CopyTrading] Health sweep failed: {e}")

    def _is_current(self, session: int) -> bool:
        return self._session == session and self.state == ControllerState.ACTIVE

    async def check_connections(self):
        """Reconnect traders (and the mirror) whose socket dropped."""
        logger.info(
            f"[CopyTrading] Status: {len(self._connections)} trader(s) connected, "
            f"{self.copied_trades} trades copied"
        )
        if self.state != ControllerState.ACTIVE:
            return
        session = self._session

        for token in list(self._known_tokens):
            if not self._is_current(session):
                return
            connection = self._connections.get(token)
            if connection is not None and not connection.is_closed:
                continue
            if token in self._reconnecting:
                continue

            self._reconnecting.add(token)
            try:
                logger.info(f"[CopyTrading] Reconnecting to trader {mask_token(token)}...")
                trader = await self._connect_trader(token)
                if self._is_current(session):
                    self._connections[token] = trader
                else:
                    await trader.close()
            except CopyTradingError as e:
                logger.warning(f"[CopyTrading] Reconnect failed for {mask_token(token)}: {e}")
            finally:
                self._reconnecting.discard(token)

        config = self.config
        if not self._is_current(session) or not config or not config.copy_to_real_account:
            return
        if self._mirror is not None and not self._mirror.is_closed:
            return
        try:
            logger.info("[CopyTrading] Reconnecting to real account...")
            mirror = await self._connect_mirror(config.real_account_token)
            if self._is_current(session):
                self._mirror = mirror
            else:
                await mirror.close()
        except CopyTradingError as e:
            logger.warning(f"[CopyTrading] Real account reconnect failed: {e}")

    # -------------------------------------------------------------------------
    # TRANSACTION PIPELINE
    # -------------------------------------------------------------------------

    def _on_transaction(self, trader: TraderConnection, transaction: dict):
        if self.state != ControllerState.ACTIVE:
            return
        if self._connections.get(trader.token) is not trader:
            return
        task = asyncio.create_task(self.handle_transaction(trader.token, transaction))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_for_pending(self):
        """Wait for in-flight replications (tests, shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _route(self) -> tuple[Any, str]:
        """Mirror connection when mirroring and authorized, else the platform"""
        mirror = self._mirror
        if (
            self.config and self.config.copy_to_real_account
            and mirror is not None and mirror.authorized and not mirror.is_closed
        ):
            return mirror.transport, "mirror"
        return self._api, "primary"

    async def handle_transaction(self, token: str, transaction: dict) -> bool:
        """
        Replicate one trader transaction if it passes every check.

        Returns True if a copy was bought.
        """
        config = self.config
        if self.state != ControllerState.ACTIVE or config is None:
            return False

        tx_key = f"{token}-{transaction.get('transaction_id')}"
        if tx_key in self._processed:
            return False

        if not is_new_position(transaction):
            return False

        if not should_copy_trade(transaction, config):
            logger.info(f"[CopyTrading] Skipping trade {transaction.get('transaction_id')} based on filters")
            return False

        self._processed.add(tx_key)
        session = self._session

        api, route = self._route()
        if api is None:
            logger.error("[CopyTrading] API not connected")
            return False

        self._check_scaled_stake(transaction, config)
        trader = self._connections.get(token)
        source = trader.account_type.value.upper() if trader and trader.account_type else "UNKNOWN"
        logger.info(f"[CopyTrading] Copy mode: {source} → {'REAL' if route == 'mirror' else 'CURRENT'}")

        try:
            placed = await self._replicator.replicate(transaction, api, route)
        except CopyTradingError as e:
            logger.error(
                f"[CopyTrading] Copy of transaction {transaction.get('transaction_id')} failed: "
                f"{type(e).__name__}: {e}"
            )
            return False

        if session != self._session:
            logger.warning(
                f"[CopyTrading] Contract {placed.contract_id} bought after the session ended; not counted"
            )
            return False

        self.copied_trades += 1
        self.last_copied_trade = datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()
        logger.info(f"[CopyTrading] Trade copied successfully: {placed.to_dict()}")

        monitor = ContractMonitor(api, placed.contract_id, partial(self._record_profit, session))
        try:
            await monitor.start()
        except CopyTradingError as e:
            logger.error(f"[CopyTrading] Failed to monitor contract {placed.contract_id}: {e}")

        return True

    def _check_scaled_stake(self, transaction: dict, config: CopyTradingConfig):
        """The filter checks the source stake; flag copies the ratio pushes out of bounds"""
        scaled = source_stake(transaction) * (config.copy_ratio or 1.0)
        if config.min_trade_stake and scaled < config.min_trade_stake:
            logger.warning(f"[CopyTrading] Scaled stake {scaled:.2f} below minimum {config.min_trade_stake}")
        if config.max_trade_stake and scaled > config.max_trade_stake:
            logger.warning(f"[CopyTrading] Scaled stake {scaled:.2f} above maximum {config.max_trade_stake}")

    def _record_profit(self, session: int, profit: float):
        if session != self._session:
            return
        self.total_profit += profit
        logger.info(f"[CopyTrading] Profit: ${profit:.2f}, Total: ${self.total_profit:.2f}")

    # -------------------------------------------------------------------------
    # STATUS
    # -------------------------------------------------------------------------

    def is_running(self) -> bool:
        return self.state == ControllerState.ACTIVE

    def get_status(self) -> dict:
        return {
            "is_active": self.is_running(),
            "state": self.state.value,
            "trader_tokens": [mask_token(t) for t in self.config.trader_tokens] if self.config else [],
            "copied_trades": self.copied_trades,
            "total_profit": self.total_profit,
            "last_copied_trade": self.last_copied_trade,
        }

    def get_detailed_statistics(self) -> dict:
        mirror = self._mirror
        return {
            "is_active": self.is_running(),
            "connected_traders": len(self._connections),
            "copied_trades": self.copied_trades,
            "total_profit": self.total_profit,
            "average_profit_per_trade": (
                self.total_profit / self.copied_trades if self.copied_trades > 0 else 0.0
            ),
            "processed_transactions": len(self._processed),
            "mode": self.config.mode_label if self.config else None,
            "mirror_account": mirror.loginid if mirror is not None and mirror.authorized else None,
        }

    def get_connected_traders(self) -> list[dict]:
        return [c.to_dict() for c in self._connections.values() if c.authorized]
