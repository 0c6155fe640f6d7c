from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.staticfiles import StaticFiles

from .config import load_config
from .events import Unrecognized, parse_update
from .fsinit import build_default_paths, ensure_runtime_dirs, set_umask_from_env
from .orchestrator import AppContext, WebhookOrchestrator, build_context
from .storage import list_jobs
from .utils import configure_logging, log_event

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


def create_app(context: AppContext | None = None) -> FastAPI:
    logger = configure_logging("vidlens.app")
    if context is None:
        config = load_config()
        set_umask_from_env()
        ensure_runtime_dirs(build_default_paths(config.paths))
        context = build_context(config)
    else:
        ensure_runtime_dirs(build_default_paths(context.config.paths))

    orchestrator = WebhookOrchestrator(context)
    app = FastAPI(title="vidlens webhook")
    app.state.context = context
    app.mount("/md", StaticFiles(directory=context.config.paths.md_dir), name="md")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await context.aclose()

    @app.get("/")
    def root() -> dict[str, str]:
        return {"service": context.config.app.name}

    @app.get("/health")
    def health() -> dict[str, object]:
        return {
            "ok": True,
            "version": _get_version(),
            "time": datetime.now(tz=timezone.utc).isoformat(),
        }

    @app.post("/webhook")
    async def webhook(request: Request, background: BackgroundTasks) -> dict[str, bool]:
        _check_secret(request, context.config.telegram.webhook_secret)
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        event = parse_update(payload)
        if isinstance(event, Unrecognized):
            log_event(logger, logging.DEBUG, "webhook_unrecognized", reason=event.reason)
        background.add_task(orchestrator.handle, event)
        return {"ok": True}

    @app.get("/jobs")
    def jobs(limit: int = 20) -> list[dict[str, object]]:
        rows = []
        for job in list_jobs(context.conn, limit=limit):
            rows.append(
                {
                    "id": job.id,
                    "message_id": job.message_id,
                    "url": job.url,
                    "file_path": job.file_path,
                    "status": job.status,
                    "created_at": job.created_at,
                    "updated_at": job.updated_at,
                }
            )
        return rows

    return app


def _check_secret(request: Request, expected: str) -> None:
    if not expected:
        return
    provided = request.headers.get(SECRET_HEADER, "")
    if not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="unauthorized")


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("vidlens")
    except Exception:  # noqa: BLE001
        return "unknown"
