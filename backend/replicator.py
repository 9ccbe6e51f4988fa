"""
Trade Replicator - turns a trader's purchase into our own proposal + buy.

The quote and the purchase always go over the same connection: the mirror
(real) account when mirroring is on, otherwise the platform connection.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Optional

from config import DEFAULT_CURRENCY, DEFAULT_DURATION_UNIT, DEFAULT_TICK_DURATION
from errors import PurchaseError, QuoteError
from transaction_filter import source_stake

logger = logging.getLogger(__name__)


@dataclass
class PlacedContract:
    """A contract we bought while copying a trader"""
    contract_id: int
    buy_price: float
    source_transaction_id: Optional[str]
    route: str  # "mirror" or "primary"
    longcode: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def build_proposal(
    transaction: dict,
    copy_ratio: float = 1.0,
    currency: str = DEFAULT_CURRENCY,
) -> dict:
    """Build a stake-based proposal request mirroring the source transaction"""
    stake = round(source_stake(transaction) * (copy_ratio or 1.0), 2)

    proposal = {
        "proposal": 1,
        "amount": stake,
        "basis": "stake",
        "contract_type": transaction.get("contract_type"),
        "currency": currency,
        "duration": transaction.get("duration") or DEFAULT_TICK_DURATION,
        "duration_unit": transaction.get("duration_unit") or DEFAULT_DURATION_UNIT,
        "symbol": transaction.get("symbol"),
    }

    if transaction.get("barrier"):
        proposal["barrier"] = transaction["barrier"]

    return proposal


async def place_contract(api: Any, proposal: dict) -> dict:
    """
    Quote then buy on one connection. No retries.

    Returns the "buy" payload (contract_id, buy_price, longcode...).

    Raises:
        QuoteError: proposal rejected
        PurchaseError: buy rejected
    """
    response = await api.send(proposal)
    if response.get("error"):
        raise QuoteError.from_response(response, "Proposal failed")

    quote = response["proposal"]
    buy_request = {"buy": quote["id"], "price": quote["ask_price"]}
    logger.info(f"[Replicator] Buying {proposal.get('contract_type')} {proposal.get('symbol')}: {buy_request}")

    response = await api.send(buy_request)
    if response.get("error"):
        raise PurchaseError.from_response(response, "Buy failed")

    return response["buy"]


class TradeReplicator:
    """Copies one accepted source transaction onto a connection."""

    def __init__(self, copy_ratio: float = 1.0, currency: str = DEFAULT_CURRENCY):
        self.copy_ratio = copy_ratio or 1.0
        self.currency = currency

    async def replicate(self, transaction: dict, api: Any, route: str = "primary") -> PlacedContract:
        proposal = build_proposal(transaction, self.copy_ratio, self.currency)
        logger.info(f"[Replicator] Copying trade via {route}: {proposal}")

        bought = await place_contract(api, proposal)

        return PlacedContract(
            contract_id=bought["contract_id"],
            buy_price=float(bought.get("buy_price") or proposal["amount"]),
            source_transaction_id=transaction.get("transaction_id"),
            route=route,
            longcode=bought.get("longcode"),
        )
