"""
Pytest fixtures for the test suite.
"""
import pytest
import asyncio
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import CopyTradingConfig
from copy_trading import CopyTradingController
from errors import ConnectivityError


REQUEST_KINDS = (
    "authorize",
    "transaction",
    "proposal_open_contract",
    "proposal",
    "buy",
    "ticks",
)


class FakeTransport:
    """
    In-memory stand-in for DerivConnection.

    Responses are scripted per request kind: either a dict, or a callable
    taking the request and returning a dict (or raising). Like the real
    client, every response is also delivered to on_message listeners.
    """

    def __init__(self, name: str = "fake", responses: dict = None, fail_open: bool = False):
        self.name = name
        self.responses = dict(responses or {})
        self.fail_open = fail_open
        self.sent: list[dict] = []
        self.is_open = False
        self.open_calls = 0
        self._listeners = []
        self._close_callbacks = []
        self._req_id = 0

    async def open(self):
        self.open_calls += 1
        if self.fail_open:
            raise ConnectivityError(f"{self.name} refused")
        self.is_open = True

    async def send(self, request: dict, timeout: float = None) -> dict:
        if not self.is_open:
            raise ConnectivityError(f"{self.name} WebSocket not connected")
        self.sent.append(request)
        kind = next((k for k in REQUEST_KINDS if k in request), "unknown")
        responder = self.responses.get(kind, {})
        response = dict(responder(request) if callable(responder) else responder)
        self._req_id += 1
        response.setdefault("msg_type", "tick" if kind == "ticks" else kind)
        response["req_id"] = self._req_id
        self.emit(response)
        return response

    def on_message(self, listener):
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def add_close_callback(self, callback):
        self._close_callbacks.append(callback)

    async def close(self):
        if not self.is_open:
            return
        self.is_open = False
        for callback in list(self._close_callbacks):
            callback()

    def drop(self):
        """Simulate the server closing the socket"""
        self.is_open = False
        for callback in list(self._close_callbacks):
            callback()

    def emit(self, message: dict):
        for listener in list(self._listeners):
            listener(message)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def sent_kinds(self) -> list[str]:
        return [next((k for k in REQUEST_KINDS if k in r), "unknown") for r in self.sent]


class DelayedTransport(FakeTransport):
    """FakeTransport whose authorize answer arrives after `delay` seconds"""

    def __init__(self, delay: float, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    async def send(self, request: dict, timeout: float = None) -> dict:
        if "authorize" in request:
            await asyncio.sleep(self.delay)
        return await super().send(request, timeout)


def authorize_ok(loginid: str, balance: float = 500.0) -> dict:
    return {"authorize": {"loginid": loginid, "balance": balance, "currency": "USD"}}


def authorize_error(message: str = "The token is invalid.") -> dict:
    return {"error": {"code": "InvalidToken", "message": message}}


def trading_responses(contract_id: int = 9001, ask_price: float = 10.0) -> dict:
    """Responses for a successful proposal + buy + contract subscription"""
    return {
        "proposal": lambda req: {"proposal": {"id": f"prop-{req['amount']}", "ask_price": req["amount"]}},
        "buy": lambda req: {"buy": {
            "contract_id": contract_id,
            "buy_price": req["price"],
            "longcode": "Win payout if ...",
        }},
        "proposal_open_contract": lambda req: {"proposal_open_contract": {
            "contract_id": req["contract_id"],
            "is_sold": 0,
            "status": "open",
        }},
    }


def trader_transport(loginid: str = "CR100001", balance: float = 500.0, **kwargs) -> FakeTransport:
    return FakeTransport(
        name=f"trader-{loginid}",
        responses={
            "authorize": authorize_ok(loginid, balance),
            "transaction": {"transaction": {}, "subscription": {"id": "sub-tx"}},
        },
        **kwargs,
    )


def buy_transaction(transaction_id: int = 1, **overrides) -> dict:
    tx = {
        "action": "buy",
        "transaction_id": transaction_id,
        "symbol": "R_50",
        "amount": -10.0,
        "contract_type": "CALL",
        "duration": 5,
        "duration_unit": "t",
    }
    tx.update(overrides)
    return tx


class TransportFactory:
    """Hands out scripted transports per token, in order, recording names"""

    def __init__(self):
        self.queue: list[FakeTransport] = []
        self.created: list[tuple[str, FakeTransport]] = []

    def add(self, transport: FakeTransport) -> FakeTransport:
        self.queue.append(transport)
        return transport

    def __call__(self, name: str) -> FakeTransport:
        transport = self.queue.pop(0) if self.queue else FakeTransport(name=name, fail_open=True)
        self.created.append((name, transport))
        return transport


@pytest.fixture
def platform_api():
    """Platform (primary) connection, already open and able to trade."""
    api = FakeTransport(name="platform", responses=trading_responses())
    api.is_open = True
    return api


@pytest.fixture
def transport_factory():
    return TransportFactory()


@pytest.fixture
def controller(platform_api, transport_factory):
    """Isolated controller with no background sweep during tests."""
    return CopyTradingController(
        api=platform_api,
        connection_factory=transport_factory,
        health_check_interval=3600,
        connect_timeout=1.0,
        clock=lambda: 1767812400.0,
    )


@pytest.fixture
def basic_config():
    return CopyTradingConfig(trader_tokens=["T1-token-abcdef"])
