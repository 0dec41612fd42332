from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import ORJSONResponse

from . import __version__
from .config import default_config_path, load_config
from .debug_log import DebugLog
from .events import EventBus
from .rig import RigError
from .rig.session import RigSession
from .routes import router

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def create_app(config_path: Optional[Path] = None) -> FastAPI:
    """Create and configure the rigdash FastAPI application."""
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rig_cfg = app.state.config.rig
        if rig_cfg.auto_connect:
            try:
                await app.state.session.connect(rig_cfg.host, rig_cfg.port)
            except RigError as e:
                # An absent rig is not a startup failure
                logger.warning("auto-connect to %s:%s failed: %s", rig_cfg.host, rig_cfg.port, e)
        yield
        await app.state.session.close()

    app = FastAPI(title="rigdash", version=__version__, default_response_class=ORJSONResponse, lifespan=lifespan)
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    if config_path is None:
        config_path = default_config_path()

    app.state.config_path = config_path
    app.state.config = load_config(app.state.config_path)
    app.state.debug = DebugLog(maxlen=app.state.config.debug_log_size)
    app.state.events = EventBus()
    app.state.session = RigSession.from_config(
        app.state.config.rig,
        events=app.state.events,
        debug=app.state.debug,
    )

    app.include_router(router)

    return app


def run():
    import uvicorn

    config_path = default_config_path()
    app = create_app(config_path)
    cfg = app.state.config
    configure_logging(cfg.log_level)
    logger.info("rigdash %s serving on %s:%s", __version__, cfg.http_host, cfg.http_port)
    uvicorn.run(app, host=cfg.http_host, port=cfg.http_port, loop="auto", log_level=cfg.log_level.lower())
