from fastapi import FastAPI, Request, Response
from fastapi.responses import FileResponse, PlainTextResponse
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from contextlib import asynccontextmanager
import logging
import os

from source_manager import SourceManager
from config import settings, VERSION

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class CORSHeadersMiddleware:
    """Adds the CORS headers to every response, preflight or not.

    Pure ASGI so streamed bodies pass through untouched.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_cors(message: Message):
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in CORS_HEADERS.items():
                    headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_cors)


# Global stream engine
source_manager = SourceManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info("Radio relay starting up...")
    await source_manager.start()

    yield

    # Shutdown
    logger.info("Radio relay shutting down...")
    await source_manager.stop()


app = FastAPI(
    title="radio relay",
    version=VERSION,
    description="Live audio stream relay with automatic source discovery and failover",
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

app.add_middleware(CORSHeadersMiddleware)


def index_path() -> str:
    return os.path.join(settings.STATIC_DIR, "index.html")


@app.get("/", include_in_schema=False)
async def root():
    """Serve the player page"""
    path = index_path()
    if not os.path.isfile(path):
        logger.warning(f"Index page not found at {path}")
        return PlainTextResponse("File not found", status_code=404)
    return FileResponse(path, media_type="text/html", headers=NO_CACHE_HEADERS)


@app.get("/stream{suffix:path}")
async def stream(request: Request, suffix: str):
    """Relay the live audio stream"""
    try:
        return await source_manager.relay.handle_stream(request)
    except Exception as e:
        logger.error(f"Error serving stream: {e}")
        return PlainTextResponse("Error connecting to radio stream", status_code=500)


@app.options("/{path:path}", include_in_schema=False)
async def preflight(path: str):
    """CORS preflight"""
    return Response(status_code=200)


@app.api_route("/{path:path}", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def not_found(path: str):
    return PlainTextResponse("Not found", status_code=404)
