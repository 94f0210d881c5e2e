from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import asyncio
import logging
from typing import Optional

from crowdwatch.api import predict_api, status_api, ws_server
from crowdwatch.config import Settings
from crowdwatch.ml.dummy_ml import DummyML
from crowdwatch.scheduler.frame_scheduler import FrameDispatcher
from crowdwatch.services.alert_evaluator import AlertEvaluator
from crowdwatch.services.ml_service import MLService
from crowdwatch.services.viewer_manager import ViewerManager

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 5.0


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_ml_module(settings: Settings):
    if settings.use_remote_inference:
        logger.info(f"[Startup] Remote inference at {settings.inference_url}")
        return MLService(
            settings.inference_url,
            api_key=settings.inference_api_key,
            confidence=settings.confidence,
            timeout=settings.inference_timeout,
        )
    logger.warning("[Startup] No inference endpoint configured, using DummyML")
    return DummyML()


def create_app(settings: Optional[Settings] = None, ml_module=None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    settings.warn_if_incomplete()

    app = FastAPI(title="Crowdwatch", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Core pipeline: one instance of each, shared through app.state
    ml_module = ml_module or build_ml_module(settings)
    viewer_manager = ViewerManager()
    alert_evaluator = AlertEvaluator(threshold=settings.alert_threshold,
                                     cooldown=settings.alert_cooldown)
    dispatcher = FrameDispatcher(
        ml_module,
        alert_evaluator,
        viewer_manager,
        max_concurrency=settings.max_concurrency,
        max_backlog=settings.max_backlog,
    )

    app.state.settings = settings
    app.state.ml_module = ml_module
    app.state.viewer_manager = viewer_manager
    app.state.alert_evaluator = alert_evaluator
    app.state.dispatcher = dispatcher

    app.include_router(ws_server.router, prefix="/ws", tags=["websocket"])
    app.include_router(predict_api.router)
    app.include_router(status_api.router)

    @app.on_event("startup")
    async def startup_event():
        logger.info(f"[Startup] Dispatcher ready: max_concurrency={settings.max_concurrency}, "
                    f"max_backlog={settings.max_backlog}, threshold={settings.alert_threshold}")

    @app.on_event("shutdown")
    async def shutdown_event():
        try:
            await asyncio.wait_for(dispatcher.join(), timeout=SHUTDOWN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"[Shutdown] {dispatcher.active_slots} frames still in flight")
        close = getattr(ml_module, "close", None)
        if close is not None:
            close()

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception(f"[API] Server error on {request.url.path}")
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    @app.get("/")
    def read_root():
        return {"message": "Crowdwatch backend is running"}

    return app


app = create_app()


def main():
    import uvicorn
    settings = app.state.settings
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
