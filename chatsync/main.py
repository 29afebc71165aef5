import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .config import settings
from .redis_conn import create_redis
from .relay import BroadcastRelay

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("chatsync")

redis = create_redis()


@asynccontextmanager
async def lifespan(app: FastAPI):
    relay = BroadcastRelay(redis)
    await relay.start()
    app.state.relay = relay
    logger.info("Chat relay running at http://%s:%s", settings.APP_HOST, settings.APP_PORT)
    yield
    await relay.stop()


app = FastAPI(title="Chat Broadcast Relay", lifespan=lifespan)


@app.get("/health")
async def health():
    try:
        await redis.ping()
    except Exception as e:
        raise HTTPException(503, f"broker unreachable: {e}")
    return {"ok": True}


@app.get("/presence")
async def presence(request: Request):
    users = request.app.state.relay.active_users
    return {
        "count": len(users),
        "users": [{"username": u, "color": users[u]} for u in sorted(users)],
    }


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def run() -> None:
    uvicorn.run(app, host=settings.APP_HOST, port=settings.APP_PORT)
