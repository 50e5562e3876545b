"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bwproxy.api.routes import router
from bwproxy.config import logger as config_logger
from bwproxy.proxy.fetcher import close_http_client

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config_logger.info("Bandwidth proxy started")
    yield
    await close_http_client()
    config_logger.info("Bandwidth proxy shutting down")


app = FastAPI(
    title="Bandwidth Hero Proxy",
    description="Fetch images on behalf of clients and re-encode them to WebP/JPEG when it saves bytes.",
    version="1.0.0",
    lifespan=lifespan,
)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from bwproxy.config import HOST, PORT
    uvicorn.run("bwproxy.main:app", host=HOST, port=PORT)
