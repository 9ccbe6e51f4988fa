"""
Contract Monitor - follows one bought contract until it is sold.

Self-terminating: the listener is released on the sold update. Monitors are
not tracked anywhere; if the connection closes first the listener simply
never fires again.
"""

import logging
from typing import Any, Callable, Optional

from errors import SubscriptionError

logger = logging.getLogger(__name__)


class ContractMonitor:

    def __init__(self, api: Any, contract_id: int, on_settled: Callable[[float], None]):
        self.api = api
        self.contract_id = contract_id
        self.on_settled = on_settled
        self.settled = False
        self.profit: Optional[float] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def start(self):
        """
        Subscribe to proposal_open_contract updates.

        The listener goes in first so the subscribe response itself (which
        already carries the contract state) is seen too.
        """
        self._unsubscribe = self.api.on_message(self._handle_message)
        response = await self.api.send({
            "proposal_open_contract": 1,
            "contract_id": self.contract_id,
            "subscribe": 1,
        })
        if response.get("error"):
            self._release()
            raise SubscriptionError.from_response(response, "Failed to subscribe to contract")

    def _handle_message(self, data: dict):
        if data.get("msg_type") != "proposal_open_contract":
            return
        contract = data.get("proposal_open_contract") or {}
        if contract.get("contract_id") != self.contract_id:
            return
        if not (contract.get("is_sold") or contract.get("status") == "sold"):
            return
        if self.settled:
            return

        self.settled = True
        self.profit = float(contract.get("profit") or 0.0)
        self._release()
        logger.info(f"[Monitor] Contract {self.contract_id} closed. Profit: ${self.profit:.2f}")
        self.on_settled(self.profit)

    def _release(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
