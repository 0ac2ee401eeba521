"""
servectl Server: the supervised web process.

Runs as a subprocess of the launcher. Serves one static page plus a health
endpoint; exits cleanly on SIGTERM (uvicorn's graceful shutdown).

Starlette + uvicorn on {SERVECTL_HOST}:{SERVECTL_SERVER_PORT}. Without the
environment variable the port comes from the shared port file, then from
the start of the configured range.
"""

import logging
import os
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

import uvicorn

from servectl.config import LOG_DIR, PORT_FILE, SERVER_PORT_ENV, load_settings
from servectl.ports import PortRegistry

log = logging.getLogger("server")

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1.0" />
  <title>90s Cashu</title>
  <style>
    body { margin:0; min-height:100vh; display:flex; align-items:center; justify-content:center;
           background:linear-gradient(135deg,#ff00cc,#3333ff); color:#f8f7ff;
           font-family:"Comic Sans MS","Trebuchet MS",sans-serif; }
    main { background:rgba(0,0,0,.45); border:4px ridge #00ffcc; border-radius:12px;
           padding:32px; max-width:520px; text-align:center; }
    h1 { font-size:2.6rem; margin:0 0 12px; text-shadow:3px 3px #ff6600; }
    footer { margin-top:20px; font-size:.85rem; opacity:.7; }
  </style>
</head>
<body>
  <main>
    <h1>90s Cashu</h1>
    <p>A delightfully retro experience, served fresh by a single supervised process.</p>
    <footer>Powered by servectl</footer>
  </main>
</body>
</html>
"""


async def index_page(request: Request) -> HTMLResponse:
    return HTMLResponse(INDEX_HTML)


async def api_health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "pid": os.getpid(), "port": request.url.port})


@asynccontextmanager
async def lifespan(app):
    log.info("Server ready (pid=%d)", os.getpid())
    yield
    log.info("Server shutting down...")


routes = [
    Route("/", endpoint=index_page),
    Route("/api/health", endpoint=api_health),
]

app = Starlette(routes=routes, lifespan=lifespan)


# ---------------------------------------------------------------------------
# Port selection
# ---------------------------------------------------------------------------
def resolve_port(environ: Optional[dict] = None) -> int:
    """Environment first, then the port file, then the start of the range."""
    environ = os.environ if environ is None else environ
    settings = load_settings(environ=environ)
    start = int(settings["SERVECTL_PORT_RANGE_START"])
    end = int(settings["SERVECTL_PORT_RANGE_END"])
    raw = environ.get(SERVER_PORT_ENV, "").strip()
    if raw:
        return int(raw)
    persisted = PortRegistry(PORT_FILE, start, end).read()
    return persisted if persisted is not None else start


def _setup_logging() -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        LOG_DIR / "server.log", maxBytes=2 * 1024 * 1024, backupCount=3, encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    logging.basicConfig(level=logging.INFO, format=_LOG_FORMAT, handlers=[file_handler, logging.StreamHandler()])


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main() -> None:
    _setup_logging()
    port = resolve_port()
    host = str(load_settings()["SERVECTL_HOST"])
    log.info("Starting server on %s:%d", host, port)
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    uvicorn.Server(config).run()
    log.info("Server closed.")


if __name__ == "__main__":
    main()
