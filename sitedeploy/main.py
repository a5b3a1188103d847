"""FastAPI application receiving push webhooks and exposing the run history."""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError

from sitedeploy.models.settings import PipelineSettings
from sitedeploy.models.trigger import PushWebhookPayload
from sitedeploy.services.ledger import RunLedger
from sitedeploy.services.pipeline import PipelineController
from sitedeploy.services.settings import SettingsError, build_controller, load_settings

app = FastAPI(title="sitedeploy")

TEMPLATE_DIR = Path(__file__).parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATE_DIR))
templates.env.globals.update(now=lambda: datetime.now(timezone.utc))

logger = logging.getLogger(__name__)

ControllerFactory = Callable[[str], PipelineController]


def _build_debug_detail(exc: Exception) -> dict[str, str]:
    """Return a serialisable mapping describing ``exc`` for debugging."""

    message = str(exc).strip()
    return {
        "type": type(exc).__name__,
        "message": message or "No exception message provided.",
    }


def signature_matches(secret: str, body: bytes, header: str | None) -> bool:
    """Validate a GitHub ``X-Hub-Signature-256`` header against ``body``."""

    if not header or not header.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(header.removeprefix("sha256="), expected)


@app.get("/healthz")
def healthz():
    return {"ok": True}


@lru_cache(maxsize=1)
def _cached_settings() -> PipelineSettings:
    return load_settings()


def get_settings() -> PipelineSettings:
    """FastAPI dependency returning the loaded pipeline settings."""

    try:
        return _cached_settings()
    except SettingsError as exc:
        logger.exception("Pipeline settings could not be loaded", extra={"event": "settings.invalid"})
        raise HTTPException(
            status_code=503,
            detail={
                "message": "Pipeline is not configured",
                "debug": _build_debug_detail(exc),
            },
        ) from exc


@lru_cache(maxsize=None)
def _ledger_for(path: Path) -> RunLedger:
    return RunLedger(path)


def get_ledger(settings: PipelineSettings = Depends(get_settings)) -> RunLedger | None:
    """Resolve the run ledger, or ``None`` when run history is disabled."""

    if settings.ledger_path is None:
        return None
    return _ledger_for(settings.ledger_path)


def get_controller_factory(
    settings: PipelineSettings = Depends(get_settings),
    ledger: RunLedger | None = Depends(get_ledger),
) -> ControllerFactory:
    """Return a callable building a controller for a given source repository."""

    def _factory(source_url: str) -> PipelineController:
        return build_controller(settings, source_url, ledger=ledger)

    return _factory


def _status_response(payload: dict[str, object], status_code: int = 202) -> JSONResponse:
    return JSONResponse(payload, status_code=status_code)


@app.post("/webhook/push")
async def receive_push(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: PipelineSettings = Depends(get_settings),
    controller_factory: ControllerFactory = Depends(get_controller_factory),
) -> JSONResponse:
    """Start a run for a push to an allow-listed branch; ignore everything else."""

    body = await request.body()
    secret = os.getenv(settings.webhook_secret_env)
    if secret and not signature_matches(secret, body, request.headers.get("X-Hub-Signature-256")):
        logger.warning("Rejected webhook with an invalid signature", extra={"event": "webhook.signature"})
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    event_name = request.headers.get("X-GitHub-Event", "push")
    if event_name == "ping":
        return _status_response({"status": "pong"}, status_code=200)
    if event_name != "push":
        return _status_response({"status": "ignored", "reason": f"unsupported event '{event_name}'"})

    try:
        payload = PushWebhookPayload.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail={"message": "Malformed push payload", "debug": _build_debug_detail(exc)}) from exc

    event = payload.to_event()
    if event is None:
        return _status_response({"status": "ignored", "reason": "branch deleted"})

    source_url = settings.source_url or payload.repository.clone_url
    if not source_url:
        raise HTTPException(status_code=422, detail="No source repository URL available for this push")

    controller = controller_factory(source_url)
    if not controller.accepts(event):
        logger.info(
            "Ignoring push to %s", event.branch, extra={"event": "webhook.ignored", "branch": event.branch}
        )
        return _status_response({"status": "ignored", "branch": event.branch})

    background_tasks.add_task(controller.handle, event)
    logger.info(
        "Scheduled run for %s at %s",
        event.branch,
        event.commit,
        extra={"event": "webhook.accepted", "branch": event.branch},
    )
    return _status_response(
        {
            "status": "accepted",
            "branch": event.branch,
            "commit": event.commit,
            "target": controller.target.key,
        }
    )


@app.get("/api/runs", response_class=JSONResponse)
async def list_runs(
    limit: int = 20,
    ledger: RunLedger | None = Depends(get_ledger),
) -> JSONResponse:
    """Return the most recent runs, newest first."""

    if ledger is None:
        return JSONResponse({"runs": []})
    runs = ledger.latest_runs(limit=max(1, min(limit, 200)))
    return JSONResponse({"runs": [asdict(run) for run in runs]})


@app.get("/api/runs/{run_id}", response_class=JSONResponse)
async def run_detail(run_id: str, ledger: RunLedger | None = Depends(get_ledger)) -> JSONResponse:
    run = ledger.get_run(run_id) if ledger is not None else None
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return JSONResponse(asdict(run))


@app.get("/api/builds/{build_id}", response_class=JSONResponse)
async def build_manifest(build_id: str, ledger: RunLedger | None = Depends(get_ledger)) -> JSONResponse:
    """Return the file manifest recorded for a content-addressed build."""

    manifest = ledger.get_build_manifest(build_id) if ledger is not None else None
    if manifest is None:
        raise HTTPException(status_code=404, detail="Build not found")
    return JSONResponse({"build_id": build_id, "files": manifest})


@app.get("/", response_class=HTMLResponse)
async def home(
    request: Request,
    ledger: RunLedger | None = Depends(get_ledger),
) -> HTMLResponse:
    """Render the recent run history."""

    runs = ledger.latest_runs(limit=20) if ledger is not None else []
    return templates.TemplateResponse(
        request,
        "runs.html",
        {
            "title": "Site deployments",
            "runs": runs,
            "history_enabled": ledger is not None,
        },
    )
