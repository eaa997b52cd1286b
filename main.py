# main.py - Custodia deposit engine host (FastAPI)
# - startup: validate env, create tables, seed cursor, start the deposit polling loop
# - GET /        liveness
# - GET /status  listener state, cursor, last head/target

import asyncio
import logging
from pathlib import Path
from typing import Optional, Set

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

import config
import db
import ledger
from chain import ChainReader
from errors import FatalConfigError
from listener import DepositListener

# =========================================================
# App + Logging
# =========================================================
app = FastAPI(
    title="Custodia Deposit Engine",
    description="Deposit detection and balance reconciliation for custodial EVM wallets",
    version="1.0.0",
)

LOG_DIR = Path(config.LOG_DIR)
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_FILE = LOG_DIR / "custodia_engine.log"
logging.basicConfig(
    filename=str(LOG_FILE),
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("custodia")

POLL_SECONDS = config.POLL_INTERVAL_MS / 1000.0

_ticks_in_flight: Set[asyncio.Future] = set()


# =========================================================
# Models
# =========================================================
class StatusResponse(BaseModel):
    state: str
    cursor: int
    last_head: Optional[int] = None
    last_target: Optional[int] = None
    last_scan_at: Optional[str] = None
    last_error: Optional[str] = None
    confirmations: int


def success_response(data: dict, message: str = "Success") -> dict:
    return {"status": "ok", "message": message, "data": data}


# =========================================================
# Routes
# =========================================================
@app.get("/")
def root():
    return success_response({}, "Custodia deposit engine running")


@app.get("/status", response_model=StatusResponse)
def status():
    listener: Optional[DepositListener] = getattr(app.state, "listener", None)
    if listener is None:
        raise HTTPException(status_code=503, detail="Deposit listener not started")
    try:
        return listener.status()
    except Exception as e:
        logger.exception("status error")
        raise HTTPException(status_code=500, detail=str(e))


# =========================================================
# Deposit polling loop
# =========================================================
async def _deposit_loop(listener: DepositListener, interval: float):
    loop = asyncio.get_running_loop()
    while True:
        # not awaited: a tick that lands mid-scan is dropped by the listener
        fut = loop.run_in_executor(None, listener.tick)
        _ticks_in_flight.add(fut)
        fut.add_done_callback(_ticks_in_flight.discard)
        await asyncio.sleep(interval)


@app.on_event("startup")
async def startup_event():
    try:
        config.validate_config()
    except FatalConfigError:
        logger.critical("Invalid configuration, refusing to start", exc_info=True)
        raise

    await asyncio.to_thread(db.init_db)
    await asyncio.to_thread(ledger.ensure_cursor)
    logger.info("Database initialized, metadata row verified")

    listener = DepositListener(ChainReader())
    app.state.listener = listener
    app.state.deposit_task = asyncio.create_task(_deposit_loop(listener, POLL_SECONDS))
    logger.info(f"Deposit listener scheduled every {POLL_SECONDS}s")


@app.on_event("shutdown")
async def shutdown_event():
    task = getattr(app.state, "deposit_task", None)
    if task is not None:
        task.cancel()


# =========================================================
# Dev entrypoint
# =========================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
