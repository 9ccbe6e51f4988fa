"""
Transaction filtering for copy trading.

Pure predicates over a trader's transaction-feed record and the user's
CopyTradingConfig. Unset filters let everything through.
"""

from config import CopyTradingConfig


def is_new_position(transaction: dict) -> bool:
    """Only purchases open a position worth copying (not sells or adjustments)"""
    return transaction.get("action") == "buy"


def source_stake(transaction: dict) -> float:
    """Stake of the source trade. Purchases are reported as negative cash flows."""
    return abs(float(transaction.get("amount") or 0.0))


def should_copy_trade(transaction: dict, config: CopyTradingConfig) -> bool:
    """Check the transaction against the asset, stake and trade-type filters"""
    if config.assets and transaction.get("symbol") not in config.assets:
        return False

    stake = source_stake(transaction)
    if config.min_trade_stake and stake < config.min_trade_stake:
        return False
    if config.max_trade_stake and stake > config.max_trade_stake:
        return False

    if config.trade_types and transaction.get("contract_type") not in config.trade_types:
        return False

    return True
