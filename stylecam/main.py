import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stylecam import __version__
from stylecam.api import annotations_api, ws_server
from stylecam.config_loader import PipelineConfig, config
from stylecam.core.readiness import ReadinessGate
from stylecam.services.detection_service import DetectionService
from stylecam.video.frame_source import CameraFrameSource

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='[%(name)s] %(levelname)s: %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="StyleCam Annotation Backend", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(annotations_api.router)
app.include_router(ws_server.router, prefix="/ws")


@app.on_event("startup")
async def startup_event():
    config.print_summary()
    if not config.validate():
        logger.warning("[Startup] Configuration has validation errors; falling back to defaults for them")
    settings = PipelineConfig.from_loader(config)

    # Store updates are pushed to WebSocket clients on this loop
    ws_server.set_event_loop(asyncio.get_running_loop())

    gate = ReadinessGate()
    source = CameraFrameSource(settings.video_device, gate=gate)
    service = DetectionService(settings, source, gate=gate)
    app.state.service = service
    app.state.unsubscribe_ws = service.store.subscribe(ws_server.on_store_update)

    await service.start()
    if service.fatal_errors:
        logger.error("[Startup] Pipeline will stay inactive: %s", "; ".join(service.fatal_errors))
    else:
        logger.info("[Startup] Detection service started; waiting for first video frame")


@app.on_event("shutdown")
async def shutdown_event():
    unsubscribe = getattr(app.state, "unsubscribe_ws", None)
    if unsubscribe:
        unsubscribe()
    service = getattr(app.state, "service", None)
    if service is not None:
        await service.stop()
    logger.info("[Shutdown] Complete")


@app.get("/")
def read_root():
    return {"message": "StyleCam backend is running"}


# Entry point for debugging if run directly
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "stylecam.main:app",
        host=config.get("server.host", "0.0.0.0"),
        port=int(config.get("server.port", 9000)),
    )
