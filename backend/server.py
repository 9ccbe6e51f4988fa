#!/usr/bin/env python3
"""
HTTP + WebSocket server for the Deriv Copy Trader.
Exposes copy-trading control, saved trader tokens and live signals to the frontend.
"""

import asyncio
import json
import logging
import os
import secrets
from datetime import datetime
from pathlib import Path
from typing import Optional, Set

from fastapi import FastAPI, HTTPException, Security, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
import uvicorn

from config import (
    STATUS_BROADCAST_INTERVAL_SEC,
    AppSettings,
    CopyTradingConfig,
    SignalConfig,
)
from copy_trading import CopyTradingController
from deriv_client import DerivConnection
from errors import ConfigError, CopyTradingError
from health import connection_monitor
from signal_feed import SignalAutoTrader, SignalFeed, TickTrendAnalyzer
from token_store import LocalStore, TraderTokenList

logger = logging.getLogger("server")

# ============================================================================
# LOGGING SETUP
# ============================================================================

def setup_logging(log_dir: str = "logs") -> None:
    """File + console logging; replicated trades also go to a dated trades log"""
    root = logging.getLogger()
    if getattr(root, "_copy_trader_configured", False):
        return

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    today = datetime.now().strftime('%Y%m%d')
    root.setLevel(logging.INFO)

    # File handler - all logs
    file_handler = logging.FileHandler(f"{log_dir}/copy_trader_{today}.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
    ))

    # Trade-specific log
    trade_handler = logging.FileHandler(f"{log_dir}/trades_{today}.log")
    trade_handler.setLevel(logging.INFO)
    trade_handler.setFormatter(logging.Formatter('%(asctime)s | %(message)s'))

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(message)s'
    ))

    root.addHandler(file_handler)
    root.addHandler(console_handler)
    logging.getLogger("replicator").addHandler(trade_handler)
    root._copy_trader_configured = True


# ============================================================================
# SECURITY: API Key Authentication
# ============================================================================

ENV = os.getenv("ENV", "development").lower()
API_KEY = os.getenv("API_KEY")

if not API_KEY:
    if ENV == "production":
        raise SystemExit("[Security] FATAL: API_KEY environment variable not set.")
    API_KEY = secrets.token_urlsafe(32)
    print(f"[Security] Generated temporary key: {API_KEY}")

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: str = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints"""
    if not api_key or api_key != API_KEY:
        raise HTTPException(
            status_code=403,
            detail="Invalid or missing API key. Include X-API-Key header."
        )
    return api_key


# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Deriv Copy Trader API",
    description="Copy trading between Deriv accounts and live tick signals",
    version="1.0.0",
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict this
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

settings: Optional[AppSettings] = None
platform: Optional[DerivConnection] = None
controller: Optional[CopyTradingController] = None
token_list: Optional[TraderTokenList] = None
signal_feed: Optional[SignalFeed] = None
auto_trader: Optional[SignalAutoTrader] = None

# WebSocket clients
ws_clients: Set[WebSocket] = set()

# Background tasks
background_tasks: list[asyncio.Task] = []


# ============================================================================
# STARTUP / SHUTDOWN
# ============================================================================

async def connect_platform(conn: DerivConnection, api_token: Optional[str]) -> bool:
    """Open the platform connection and log in. Returns True once authorized."""
    try:
        await conn.open()
    except CopyTradingError as e:
        logger.error(f"[Server] Platform connection failed: {e}")
        return False

    if not api_token:
        logger.warning("[Server] DERIV_API_TOKEN not set - copy trading needs a logged-in platform account")
        return False

    try:
        response = await conn.send({"authorize": api_token})
    except CopyTradingError as e:
        logger.error(f"[Server] Platform authorization failed: {e}")
        return False

    if response.get("error"):
        logger.error(f"[Server] Platform authorization failed: {response['error']}")
        return False

    logger.info(f"[Server] Platform logged in as {response['authorize'].get('loginid')}")
    return True


@app.on_event("startup")
async def startup():
    """Connect the platform account and start signal + status loops"""
    global settings, platform, controller, token_list, signal_feed, auto_trader

    settings = AppSettings.from_env()
    setup_logging(settings.log_dir)

    token_list = TraderTokenList(LocalStore(settings.token_db_path))

    platform = DerivConnection(url=settings.deriv_ws_url, name="platform")
    authorized = await connect_platform(platform, settings.api_token)

    ws_url = settings.deriv_ws_url
    controller = CopyTradingController(
        api=platform if authorized else None,
        connection_factory=lambda name: DerivConnection(url=ws_url, name=name),
    )

    signal_feed = SignalFeed(TickTrendAnalyzer(), SignalConfig())
    signal_feed.on_signal = lambda sig: asyncio.create_task(
        broadcast({"type": "signal", "data": sig.to_dict()})
    )
    auto_trader = SignalAutoTrader(platform if authorized else None, signal_feed.config)

    if platform.is_open:
        try:
            await signal_feed.subscribe(platform)
        except CopyTradingError as e:
            logger.error(f"[Server] Failed to subscribe to signals: {e}")

    background_tasks.append(asyncio.create_task(signal_feed.run_expiry_loop()))
    background_tasks.append(asyncio.create_task(broadcast_status_loop()))

    logger.info("[Server] Started")


@app.on_event("shutdown")
async def shutdown():
    """Clean up on shutdown"""
    if controller and controller.is_running():
        await controller.stop()
    if signal_feed:
        signal_feed.stop()
    if platform:
        await platform.close()

    for task in background_tasks:
        task.cancel()

    logger.info("[Server] Shutdown complete")


# ============================================================================
# BROADCAST HELPERS
# ============================================================================

async def broadcast(message: dict):
    """Broadcast message to all connected WebSocket clients"""
    if not ws_clients:
        return

    data = json.dumps(message)
    disconnected = set()

    for ws in ws_clients:
        try:
            await ws.send_text(data)
        except Exception:
            disconnected.add(ws)

    # Clean up disconnected clients
    for ws in disconnected:
        ws_clients.discard(ws)


def copy_trading_snapshot() -> dict:
    return {
        "status": controller.get_status(),
        "statistics": controller.get_detailed_statistics(),
        "traders": controller.get_connected_traders(),
    }


async def broadcast_status_loop():
    """Push copy-trading status and live signals every few seconds"""
    while True:
        await asyncio.sleep(STATUS_BROADCAST_INTERVAL_SEC)

        if not ws_clients:
            continue

        if controller and controller.is_running():
            await broadcast({"type": "copy_trading_status", "data": copy_trading_snapshot()})

        if signal_feed:
            await broadcast({"type": "signals", "data": signal_feed.get_status()})


# ============================================================================
# REST ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


@app.get("/api/health")
async def get_health():
    """Connection health for the platform and every trader socket"""
    return {
        "platform_connected": bool(platform and platform.is_open),
        **connection_monitor.get_status(),
    }


# ============================================================================
# COPY TRADING ENDPOINTS
# ============================================================================

@app.get("/api/copy-trading/status")
async def get_copy_trading_status():
    if not controller:
        return {"error": "Copy trading not initialized"}
    return controller.get_status()


@app.get("/api/copy-trading/statistics")
async def get_copy_trading_statistics():
    if not controller:
        return {"error": "Copy trading not initialized"}
    return controller.get_detailed_statistics()


@app.get("/api/copy-trading/traders")
async def get_connected_traders():
    if not controller:
        return {"traders": []}
    return {"traders": controller.get_connected_traders()}


@app.post("/api/copy-trading/start")
async def start_copy_trading(body: dict, api_key: str = Security(verify_api_key)):
    """Start copying. Tokens default to the saved trader token list."""
    if not controller:
        return {"error": "Copy trading not initialized"}

    body = dict(body)
    if not body.get("trader_tokens") and token_list:
        body["trader_tokens"] = token_list.load()

    try:
        config = CopyTradingConfig.from_dict(body)
    except ConfigError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    result = await controller.start(config)
    response = result.to_dict()
    if result.success:
        response["traders"] = controller.get_connected_traders()
    return response


@app.post("/api/copy-trading/stop")
async def stop_copy_trading(api_key: str = Security(verify_api_key)):
    if not controller:
        return {"error": "Copy trading not initialized"}
    result = await controller.stop()
    return result.to_dict()


@app.get("/api/copy-trading/tokens")
async def get_saved_tokens(api_key: str = Security(verify_api_key)):
    """Saved trader tokens (full values - the UI needs them to remove entries)"""
    if not token_list:
        return {"tokens": []}
    return {"tokens": token_list.load()}


@app.post("/api/copy-trading/tokens")
async def add_saved_token(body: dict, api_key: str = Security(verify_api_key)):
    if not token_list:
        return {"error": "Token store not initialized"}
    try:
        tokens = token_list.add(body.get("token", ""))
    except ConfigError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return {"status": "ok", "message": "Trader token added successfully", "count": len(tokens)}


@app.post("/api/copy-trading/tokens/remove")
async def remove_saved_token(body: dict, api_key: str = Security(verify_api_key)):
    if not token_list:
        return {"error": "Token store not initialized"}
    tokens = token_list.remove(body.get("token", ""))
    return {"status": "ok", "message": "Trader token removed", "count": len(tokens)}


# ============================================================================
# SIGNAL ENDPOINTS
# ============================================================================

@app.get("/api/signals")
async def get_signals():
    if not signal_feed:
        return {"signals": []}
    return signal_feed.get_status()


@app.post("/api/signals/auto-trade")
async def auto_trade_latest_signal(body: Optional[dict] = None, api_key: str = Security(verify_api_key)):
    """Trade the latest signal with the configured (or given) stake"""
    if not signal_feed or not auto_trader:
        return {"error": "Signals not initialized"}

    stake = (body or {}).get("stake")
    if stake is not None:
        try:
            stake = float(stake)
        except (TypeError, ValueError):
            return JSONResponse({"error": f"Invalid stake: {stake}"}, status_code=400)

    result = await auto_trader.execute_latest(signal_feed, stake=stake)
    return result.to_dict()


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    """
    WebSocket endpoint for real-time data.

    Clients receive:
    - copy_trading_status: status, statistics and traders (every 5s while active)
    - signals: signal feed state (every 5s)
    - signal: a newly generated signal
    """
    await ws.accept()
    ws_clients.add(ws)
    logger.info(f"[WS] Client connected. Total: {len(ws_clients)}")

    try:
        await ws.send_json({
            "type": "init",
            "copy_trading": copy_trading_snapshot() if controller else None,
            "signals": signal_feed.get_status() if signal_feed else None,
        })

        # Keep connection alive
        while True:
            try:
                data = await asyncio.wait_for(ws.receive_text(), timeout=30)
                msg = json.loads(data)

                if msg.get("type") == "ping":
                    await ws.send_json({"type": "pong"})

                elif msg.get("type") == "get_status" and controller:
                    await ws.send_json({"type": "copy_trading_status", "data": copy_trading_snapshot()})

            except asyncio.TimeoutError:
                # Send keepalive ping
                await ws.send_json({"type": "ping"})

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"[WS] Error: {e}")
    finally:
        ws_clients.discard(ws)
        logger.info(f"[WS] Client disconnected. Total: {len(ws_clients)}")


# ============================================================================
# MAIN
# ============================================================================

def main():
    """Run the server"""
    run_settings = AppSettings.from_env()
    uvicorn.run(
        "server:app",
        host=run_settings.host,
        port=run_settings.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
