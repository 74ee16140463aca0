"""HTTP control surface: health, pairing code, restart and effective config."""

from __future__ import annotations

import html
import logging
from typing import Any, Optional
from urllib.parse import quote

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ... import __version__
from ...core.logging_utils import log_event
from ...core.time_utils import now_iso
from ...integrations.whatsapp.models import Connectivity
from ...integrations.whatsapp.service import StickerBotService

logger = logging.getLogger(__name__)

APP_NAME = "WhatsApp Sticker Bot"
ENDPOINTS = ["/health", "/qr", "/qr/image", "/restart", "/config"]
QR_IMAGE_URL = "https://api.qrserver.com/v1/create-qr-code/?size=300x300&data={data}"
MEGABYTE = 1024 * 1024

_PAGE = """<html>
  <head><title>{title}</title></head>
  <body style="font-family:sans-serif;text-align:center;padding:40px">
    {body}
  </body>
</html>"""


def _page(title: str, body: str) -> str:
    return _PAGE.format(title=html.escape(title), body=body)


def _error_detail(error: str, message: str, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": error, "message": message}
    payload.update(extra)
    payload["timestamp"] = now_iso()
    return payload


def _service(request: Request) -> Optional[StickerBotService]:
    return getattr(request.app.state, "service", None)


def _not_ready() -> JSONResponse:
    return JSONResponse(
        _error_detail("Bot not initialized yet", "Please wait for bot initialization"),
        status_code=503,
    )


def bot_status(service: StickerBotService) -> str:
    connectivity = service.connectivity
    if connectivity is Connectivity.CONNECTED:
        return "connected"
    if connectivity is Connectivity.INITIALIZING:
        return "initializing"
    return "disconnected"


def build_control_routes() -> APIRouter:
    router = APIRouter(tags=["control"])

    @router.get("/")
    def index() -> dict[str, Any]:
        return {
            "message": f"{APP_NAME} is running!",
            "name": APP_NAME,
            "version": __version__,
            "timestamp": now_iso(),
            "endpoints": ENDPOINTS,
        }

    @router.get("/health")
    def health(request: Request) -> dict[str, Any]:
        service = _service(request)
        if service is None:
            return {"status": "healthy", "bot": "initializing", "timestamp": now_iso()}
        snapshot = service.snapshot
        return {
            "status": "healthy",
            "timestamp": now_iso(),
            "bot": bot_status(service),
            "connectivity": snapshot.connectivity.value,
            "disconnect_reason": snapshot.disconnect_reason,
            "logged_out": snapshot.is_final,
            "uptime": service.uptime_seconds(),
            "queued": service.queue.qsize(),
        }

    @router.get("/qr")
    def qr(request: Request) -> dict[str, Any]:
        timestamp = now_iso()
        service = _service(request)
        if service is None:
            return {
                "message": "Bot is still initializing, please wait...",
                "timestamp": timestamp,
            }
        code = service.get_scan_code()
        if code:
            return {
                "qr": code,
                "message": "Scan this QR code with WhatsApp. "
                "Or visit /qr/image for a scannable QR image.",
                "timestamp": timestamp,
            }
        if service.is_connected():
            message = "Bot is already connected"
        else:
            message = "QR code not available yet. Refresh in a few seconds."
        return {"message": message, "timestamp": timestamp}

    @router.get("/qr/image", response_class=HTMLResponse)
    def qr_image(request: Request) -> HTMLResponse:
        service = _service(request)
        refresh = "<script>setTimeout(()=>location.reload(),3000)</script>"
        if service is None:
            return HTMLResponse(
                _page(
                    "WhatsApp QR Code",
                    "<h2>Bot is still initializing...</h2>"
                    "<p>Please refresh in a few seconds.</p>" + refresh,
                ),
                status_code=503,
            )
        if service.is_connected():
            return HTMLResponse(
                _page(
                    "WhatsApp QR Code",
                    '<h2 style="color:green">Bot is already connected!</h2>',
                )
            )
        code = service.get_scan_code()
        if not code:
            return HTMLResponse(
                _page(
                    "WhatsApp QR Code",
                    "<h2>QR code not available yet</h2>"
                    "<p>Please refresh in a few seconds.</p>" + refresh,
                ),
                status_code=404,
            )
        src = html.escape(QR_IMAGE_URL.format(data=quote(code, safe="")), quote=True)
        return HTMLResponse(
            _page(
                "WhatsApp QR Code",
                "<h2>Scan QR Code with WhatsApp</h2>"
                f'<img src="{src}" alt="QR Code" width="300" height="300" />'
                '<p style="color:#666">QR code expires quickly. '
                "Refresh if it doesn't work.</p>"
                "<script>setTimeout(()=>location.reload(),20000)</script>",
            )
        )

    @router.post("/restart")
    async def restart(request: Request) -> Any:
        service = _service(request)
        if service is None:
            return _not_ready()
        try:
            await service.restart()
        except Exception as exc:
            log_event(logger, logging.ERROR, "web.restart.failed", exc=exc)
            return JSONResponse(
                _error_detail(
                    "Failed to restart bot",
                    "Restart failed",
                    details=str(exc),
                ),
                status_code=500,
            )
        log_event(logger, logging.INFO, "web.restart.ok")
        return {"message": "Bot restarted successfully", "timestamp": now_iso()}

    @router.get("/config")
    def config(request: Request) -> Any:
        service = _service(request)
        if service is None:
            return _not_ready()
        cfg = service.config
        size = cfg.media.sticker_size
        return {
            "maxFileSize": f"{cfg.media.max_file_size // MEGABYTE}MB",
            "maxFileSizeBytes": cfg.media.max_file_size,
            "supportedFormats": list(cfg.media.supported_formats),
            "features": ["image-to-sticker", "video-to-gif"],
            "stickerSize": f"{size}x{size}",
            "stickerQuality": cfg.media.sticker_quality,
            "retry": {
                "clipMaxAttempts": cfg.retry.clip_max_attempts,
                "stickerMaxAttempts": cfg.retry.sticker_max_attempts,
                "backoffBaseMs": cfg.retry.backoff_base_ms,
            },
            "timestamp": now_iso(),
        }

    return router


def create_app(service: Optional[StickerBotService] = None) -> FastAPI:
    app = FastAPI(title=APP_NAME, version=__version__)
    app.state.service = service

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            body = _error_detail(
                "Not Found", f"Cannot {request.method} {request.url.path}"
            )
        else:
            body = _error_detail(str(exc.detail), str(exc.detail))
        return JSONResponse(body, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        log_event(
            logger,
            logging.ERROR,
            "web.request.failed",
            path=request.url.path,
            exc=exc,
        )
        return JSONResponse(
            _error_detail("INTERNAL_SERVER_ERROR", str(exc) or "An unexpected error occurred"),
            status_code=500,
        )

    app.include_router(build_control_routes())
    return app
