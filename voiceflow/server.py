"""VoiceFlow HTTP API.

Run with ``voiceflow serve``. Collaborators are wired by ``init_app`` before
the app starts serving.
"""

import logging
import time
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse, Response
from pydantic import BaseModel

from voiceflow.calendar_providers import (
    CalendarError,
    CalendarProviderError,
    IntegrationNotFoundError,
    OAuthExchangeError,
    ProviderNotImplementedError,
    SyncError,
    UnknownProviderError,
    build_providers,
)
from voiceflow.calendar_sync import CalendarSyncManager
from voiceflow.config import load_config
from voiceflow.database import VoiceFlowDB
from voiceflow.transcription import TranscriptionAnalyzer

logger = logging.getLogger(__name__)

CALENDAR_PAGE = "/#/calendar"

app = FastAPI(title="VoiceFlow", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Wired by init_app()
_cfg: Optional[dict] = None
_db: Optional[VoiceFlowDB] = None
_sync_manager: Optional[CalendarSyncManager] = None
_analyzer: Optional[TranscriptionAnalyzer] = None
_started_at = time.time()


def init_app(cfg: dict = None, db: VoiceFlowDB = None,
             sync_manager: CalendarSyncManager = None,
             analyzer: TranscriptionAnalyzer = None) -> FastAPI:
    """Wire the app to its collaborators. Anything not given is built from config."""
    global _cfg, _db, _sync_manager, _analyzer, _started_at
    _cfg = cfg or load_config()
    _db = db or VoiceFlowDB(_cfg["database"]["path"])
    _sync_manager = sync_manager or CalendarSyncManager(
        _db, build_providers(_cfg),
        sync_window_days=_cfg["calendar"]["sync_window_days"])
    _analyzer = analyzer or TranscriptionAnalyzer(
        _cfg["openai"]["api_key"], _cfg["openai"]["model"])
    _started_at = time.time()
    logger.info(f"VoiceFlow API wired to {_cfg['database']['path']}")
    return app


def _user_id() -> int:
    return _cfg["user"]["default_user_id"]


def _calendar_http_error(e: CalendarError) -> HTTPException:
    if isinstance(e, UnknownProviderError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ProviderNotImplementedError):
        return HTTPException(status_code=501, detail=str(e))
    if isinstance(e, IntegrationNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _calendar_redirect(query: str) -> RedirectResponse:
    return RedirectResponse(f"{CALENDAR_PAGE}?{query}", status_code=302)


class TranscribeRequest(BaseModel):
    text: str = ""


class ConnectRequest(BaseModel):
    provider: str = ""


# ── Core ───────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": "voiceflow", "uptime": time.time() - _started_at}


@app.post("/api/transcribe", status_code=201)
async def transcribe(body: TranscribeRequest):
    """Analyze a transcript and persist the note and extracted tasks."""
    text = body.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Transcription text is required")

    user_id = _user_id()
    analysis = await _analyzer.analyze(text)

    note = _db.save_note(
        user_id, analysis["title"], text, category="work",
        extracted_tasks=len(analysis["tasks"]))
    tasks = [
        _db.save_task(
            user_id, t["title"], description=t.get("description") or "",
            due_date=t.get("dueDate"), category=t.get("category") or "work",
            priority=t.get("priority") or "medium")
        for t in analysis["tasks"]
    ]
    logger.info(f"Saved note {note['id']} with {len(tasks)} task(s)")
    return {"note": note, "tasks": tasks, "analysis": analysis}


@app.get("/api/settings")
async def get_settings():
    return _db.get_all_settings()


@app.patch("/api/settings")
async def update_settings(body: dict):
    for key, value in body.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        if key == "wake_word":
            value = str(value).strip()
            if not value:
                raise HTTPException(status_code=400, detail="Wake word is required")
        _db.set_setting(key, str(value))
    return _db.get_all_settings()


# ── Calendar ───────────────────────────────────────────────────────────

@app.get("/api/calendar/integrations")
async def list_integrations():
    return _sync_manager.list_integrations(_user_id())


@app.post("/api/calendar/connect")
async def connect(body: ConnectRequest):
    provider = body.provider
    try:
        auth_url = _sync_manager.connect(provider)
    except CalendarError as e:
        raise _calendar_http_error(e) from e
    return {
        "success": True,
        "authUrl": auth_url,
        "message": f"Please open this URL to authenticate with {provider.capitalize()} Calendar",
    }


@app.get("/api/calendar/callback/google")
async def google_callback(code: str = None, error: str = None):
    """OAuth redirect target. Always answers with a redirect to the calendar page."""
    if error:
        logger.warning(f"Google OAuth error: {error}")
        return _calendar_redirect("error=auth_rejected")
    if not code:
        return _calendar_redirect("error=missing_code")

    try:
        _integration, count = await _sync_manager.handle_callback(_user_id(), "google", code)
    except OAuthExchangeError as e:
        logger.error(f"Google token exchange failed: {e}")
        reason = "invalid_token" if e.reason == "invalid_token" else "server_error"
        return _calendar_redirect(f"error={reason}")
    except SyncError as e:
        logger.error(f"Google connected but initial sync failed: {e}")
        return _calendar_redirect("error=sync_failed")
    except Exception as e:
        logger.exception(f"Google OAuth callback error: {e}")
        return _calendar_redirect("error=server_error")
    return _calendar_redirect(f"success=true&provider=google&events={count}")


@app.get("/api/calendar/events")
async def list_events():
    return [e.to_api_dict() for e in _sync_manager.list_events(_user_id())]


@app.delete("/api/calendar/integrations/{integration_id}", status_code=204)
async def delete_integration(integration_id: str):
    try:
        iid = int(integration_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid integration ID")
    if not await _sync_manager.disconnect(iid):
        raise HTTPException(status_code=404, detail="Calendar integration not found")
    return Response(status_code=204)


@app.get("/api/calendar/integration-status")
async def integration_status():
    return _sync_manager.integration_status(_user_id())


@app.post("/api/calendar/sync/{provider}")
async def sync_provider(provider: str):
    try:
        count = await _sync_manager.sync_provider(_user_id(), provider)
    except CalendarProviderError as e:
        raise HTTPException(status_code=500, detail=f"Failed to sync {provider} calendar") from e
    except CalendarError as e:
        raise _calendar_http_error(e) from e
    return {"success": True, "provider": provider, "eventsImported": count}


if __name__ == "__main__":
    cfg = load_config()
    init_app(cfg)
    uvicorn.run(app, host=cfg["server"]["host"], port=cfg["server"]["port"])
