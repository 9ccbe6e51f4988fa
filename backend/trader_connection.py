"""
Trader Connection - one authorized WebSocket per monitored account.

Lifecycle:
    CONNECTING -> AUTHORIZING -> AUTHORIZED -> SUBSCRIBED -> CLOSED
    AUTHORIZING -> CLOSED on login failure

The mirror (real) account uses the same class with subscribe=False: it only
needs to be authorized to place trades, not to stream its own transactions.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional

from config import CONNECT_TIMEOUT_SEC, DEMO_LOGINID_PREFIXES, mask_token
from errors import (
    AuthorizationError,
    CopyTradingError,
    RequestTimeoutError,
    SubscriptionError,
)
from health import connection_monitor

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    CONNECTING = "connecting"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"


class AccountType(Enum):
    DEMO = "demo"
    REAL = "real"


def account_type_for(loginid: str) -> AccountType:
    """Virtual accounts are recognised by their login id prefix"""
    if loginid.startswith(DEMO_LOGINID_PREFIXES):
        return AccountType.DEMO
    return AccountType.REAL


class TraderConnection:
    """
    Authorizes one credential and forwards its transaction feed.

    on_transaction(connection, transaction) is called for every
    transaction-feed message, in delivery order.
    on_closed(connection) is called once when the transport closes.
    """

    def __init__(
        self,
        token: str,
        transport: Any,
        on_transaction: Optional[Callable[["TraderConnection", dict], None]] = None,
        on_closed: Optional[Callable[["TraderConnection"], None]] = None,
        subscribe: bool = True,
        connect_timeout: float = CONNECT_TIMEOUT_SEC,
    ):
        self.token = token
        self.transport = transport
        self.on_transaction = on_transaction
        self.on_closed = on_closed
        self.subscribe = subscribe
        self.connect_timeout = connect_timeout

        self.state = ConnectionState.CONNECTING
        self.loginid: Optional[str] = None
        self.account_type: Optional[AccountType] = None
        self.balance: float = 0.0
        self.currency: Optional[str] = None

        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def authorized(self) -> bool:
        return self.state in (ConnectionState.AUTHORIZED, ConnectionState.SUBSCRIBED)

    @property
    def is_closed(self) -> bool:
        return self.state == ConnectionState.CLOSED or not self.transport.is_open

    @property
    def masked_token(self) -> str:
        return mask_token(self.token)

    async def connect(self):
        """
        Open, authorize and (optionally) subscribe within connect_timeout.

        Raises:
            AuthorizationError: login rejected
            SubscriptionError: transaction subscription rejected
            ConnectivityError: transport could not open or dropped
            RequestTimeoutError: handshake did not finish in time
        """
        try:
            await asyncio.wait_for(self._handshake(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise RequestTimeoutError(
                f"Trader {self.masked_token} did not authorize within {self.connect_timeout:.0f}s"
            ) from None
        except (CopyTradingError, asyncio.CancelledError):
            await self.close()
            raise

    async def _handshake(self):
        self.state = ConnectionState.CONNECTING
        await self.transport.open()
        self.transport.add_close_callback(self._handle_close)
        self._unsubscribe = self.transport.on_message(self._handle_message)

        self.state = ConnectionState.AUTHORIZING
        response = await self.transport.send({"authorize": self.token})
        if response.get("error"):
            logger.error(f"[Trader] Authorization failed for {self.masked_token}: {response['error']}")
            raise AuthorizationError.from_response(response, "Authorization failed")

        auth = response.get("authorize") or {}
        self.loginid = auth.get("loginid", "")
        self.balance = float(auth.get("balance") or 0.0)
        self.currency = auth.get("currency")
        self.account_type = account_type_for(self.loginid)
        self.state = ConnectionState.AUTHORIZED
        connection_monitor.mark_authorized(self.transport.name, self.loginid)
        logger.info(
            f"[Trader] Authorized {self.loginid} ({self.account_type.value.upper()}) "
            f"balance {self.balance:.2f}"
        )

        if not self.subscribe:
            return

        response = await self.transport.send({"transaction": 1, "subscribe": 1})
        if response.get("error"):
            raise SubscriptionError.from_response(response, "Transaction subscription rejected")
        self.state = ConnectionState.SUBSCRIBED

    def _handle_message(self, data: dict):
        if data.get("msg_type") != "transaction":
            return
        transaction = data.get("transaction")
        if transaction and self.on_transaction:
            self.on_transaction(self, transaction)

    def _handle_close(self):
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        logger.info(f"[Trader] Connection closed for {self.loginid or self.masked_token}")
        if self.on_closed:
            self.on_closed(self)

    async def close(self):
        await self.transport.close()
        # Transports that never opened do not fire their close callbacks
        self._handle_close()

    def to_dict(self) -> dict:
        return {
            "loginid": self.loginid,
            "balance": self.balance,
            "token": self.masked_token,
            "account_type": self.account_type.value.upper() if self.account_type else "UNKNOWN",
            "state": self.state.value,
        }
