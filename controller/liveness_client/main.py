"""FastAPI entry-point for the liveness controller."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .logging_config import configure_logging
from .models import DetectionSample
from .sensors.webcam import CameraPump
from .session_manager import SessionController

logger = logging.getLogger(__name__)


class DetectionRequest(BaseModel):
    detected: bool
    confidence: float = Field(0.0, ge=0.0, le=1.0)


def create_app(
    settings: Optional[Settings] = None,
    controller: Optional[SessionController] = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.controller = controller or SessionController(settings=settings)
        app.state.camera = CameraPump(app.state.controller, settings)
        try:
            await app.state.controller.start()
            if settings.camera.enabled:
                await app.state.camera.start()
            logger.info("Application started successfully")
        except Exception as e:
            logger.exception("Failed to start services: %s", e)
            logger.error("Application startup failed - some features may not work")
        yield
        try:
            await app.state.camera.stop()
            await app.state.controller.stop()
            logger.info("Application shutdown complete")
        except Exception as e:
            logger.exception("Error during shutdown: %s", e)

    app = FastAPI(title="liveness-client", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        """Catch-all exception handler to prevent application crashes."""
        logger.exception("Unhandled exception in %s: %s", request.url.path, exc)
        return PlainTextResponse(
            f"Internal server error: {exc}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Validation error in %s: %s", request.url.path, exc)
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def manager(request: Request) -> SessionController:
        return request.app.state.controller

    @app.get("/healthz")
    async def healthcheck(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "state": manager(request).state.value})

    @app.get("/state")
    async def current_state(request: Request) -> JSONResponse:
        return JSONResponse(manager(request).snapshot().to_dict())

    @app.post("/detections", status_code=202)
    async def submit_detection(request: Request, payload: DetectionRequest) -> JSONResponse:
        manager(request).on_detection(DetectionSample(payload.detected, payload.confidence))
        return JSONResponse({"status": "accepted"}, status_code=202)

    @app.post("/frames")
    async def submit_frame(request: Request) -> JSONResponse:
        body = await request.body()
        if not body:
            return JSONResponse({"status": "error", "message": "empty frame"}, status_code=400)
        sent = await manager(request).send_frame(body)
        return JSONResponse({"status": "sent" if sent else "dropped"})

    @app.post("/recording/start", status_code=202)
    async def start_recording(request: Request) -> JSONResponse:
        manager(request).start_recording()
        return JSONResponse({"status": "accepted"}, status_code=202)

    @app.post("/recording/stop", status_code=202)
    async def stop_recording(request: Request) -> JSONResponse:
        manager(request).stop_recording()
        return JSONResponse({"status": "accepted"}, status_code=202)

    @app.post("/session/reset")
    async def reset_session(request: Request) -> JSONResponse:
        controller = manager(request)
        await controller.reset_session()
        return JSONResponse(controller.snapshot().to_dict())

    @app.get("/session/status")
    async def session_status(request: Request) -> JSONResponse:
        controller = manager(request)
        if controller.session_id is None:
            return JSONResponse({"status": "error", "message": "no active session"}, status_code=404)
        status_info = await controller.refresh_status()
        if status_info is None:
            return JSONResponse({"status": "error", "message": "status unavailable"}, status_code=502)
        return JSONResponse(status_info.model_dump())

    @app.websocket("/ws/ui")
    async def ui_socket(ws: WebSocket) -> None:
        await ws.accept()
        controller: SessionController = ws.app.state.controller
        queue = controller.register_ui()
        try:
            while True:
                event = await queue.get()
                try:
                    await ws.send_json({"type": event.type, "state": event.state.to_dict(), "data": event.data})
                except Exception as e:
                    logger.debug("WebSocket send failed (client disconnected): %s", e)
                    break
        except WebSocketDisconnect:
            pass
        except asyncio.CancelledError:
            pass
        finally:
            controller.unregister_ui(queue)

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
    uvicorn.run(create_app(settings), host=settings.controller_host, port=settings.controller_port)


if __name__ == "__main__":
    run()
