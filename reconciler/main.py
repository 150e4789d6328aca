import asyncio
import logging

import uvicorn
from fastapi import FastAPI, HTTPException, Depends, Request

from reconciler.config import RPC_URL, CONTRACT_ADDRESS, PUBLISH_EVENTS
from reconciler.database import init_db, AsyncSessionLocal
from reconciler.listener import BlockchainListener
from reconciler.logging_config import setup_logging
from reconciler.messaging import EventPublisher
from reconciler.schemas import ListenerStatus
from reconciler.source import Web3EventSource

logger = logging.getLogger(__name__)

app = FastAPI(title="Blockchain Payment Reconciler")


def get_listener(request: Request) -> BlockchainListener:
    listener = getattr(request.app.state, "listener", None)
    if listener is None:
        raise HTTPException(status_code=503, detail="Listener not initialised")
    return listener


@app.on_event("startup")
async def startup_event():
    setup_logging()
    await init_db()

    publisher = None
    if PUBLISH_EVENTS:
        publisher = EventPublisher()
        await publisher.connect()

    listener = BlockchainListener(Web3EventSource(RPC_URL, CONTRACT_ADDRESS), AsyncSessionLocal, publisher=publisher)
    app.state.publisher = publisher
    app.state.listener = listener
    # The historical backfill can take a while; don't hold up the HTTP server
    app.state.startup_task = asyncio.create_task(listener.start())


@app.on_event("shutdown")
async def shutdown_event():
    listener = getattr(app.state, "listener", None)
    if listener is not None:
        app.state.startup_task.cancel()
        await listener.stop()
    publisher = getattr(app.state, "publisher", None)
    if publisher is not None:
        await publisher.close()
    logger.info("Reconciler stopped.")


@app.get("/status", response_model=ListenerStatus)
async def get_status(listener: BlockchainListener = Depends(get_listener)):
    return await listener.status()


@app.get("/health")
async def health(listener: BlockchainListener = Depends(get_listener)):
    if not listener.is_listening:
        raise HTTPException(status_code=503, detail="Listener not running")
    return {"status": "ok"}


def run():
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
