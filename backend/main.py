"""
FastAPI Main Application
Debate Practice API - ターンテイキング制御
"""

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import logging
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from agenda import phases_for
from analysis_client import AnalysisClient
from errors import AnalysisError, TransportError
from models import DebateFormat, NotesBody
from session_manager import SessionController
from settings_manager import settings_manager
from storage import create_storage, notes_key
from websocket_handler import handle_websocket

# 環境変数読み込み
BASE_DIR = Path(__file__).resolve().parents[1]

load_dotenv()  # 既定のパス（カレントディレクトリ）
load_dotenv(dotenv_path=BASE_DIR / ".env", override=False)

# ログ設定
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# グローバル変数
storage = create_storage(
    settings_manager.get_setting("storage_backend", "file"),
    settings_manager.get_setting("data_dir", "data")
)
session_controller = SessionController(settings=settings_manager.settings, storage=storage)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションのライフサイクル管理"""
    logger.info("🚀 Debate Practice API starting...")

    yield

    logger.info("👋 Debate Practice API shutting down...")
    # 通話中なら終了させる
    await session_controller.stop()


# FastAPIアプリケーション
app = FastAPI(
    title="Debate Practice API",
    version="1.0.0",
    description="音声ディベート練習 - 話者解決とセッション管理",
    lifespan=lifespan
)

allowed_origins = ["http://localhost:3000"]
frontend_url = os.getenv("FRONTEND_URL", "").rstrip("/")
if frontend_url:
    allowed_origins.append(frontend_url)
    logger.info(f"✅ Added CORS origin: {frontend_url}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Debug
from debug_router import router as debug_router  # noqa: E402
app.include_router(debug_router)


def get_analysis_client() -> AnalysisClient:
    return AnalysisClient(
        private_key=settings_manager.get_setting("vapi_private_key", ""),
        org_id=settings_manager.get_setting("vapi_org_id", ""),
        api_url=settings_manager.get_setting("vapi_api_url", "https://api.vapi.ai")
    )


# REST API エンドポイント

@app.get("/")
async def root():
    """ヘルスチェック"""
    return {
        "status": "ok",
        "message": "Debate Practice API",
        "version": "1.0.0",
        "session": session_controller.status.value,
        "features": {
            "analysis_api": bool(settings_manager.get_setting("vapi_private_key"))
        }
    }


class SettingsUpdate(BaseModel):
    vapi_private_key: Optional[str] = None
    vapi_org_id: Optional[str] = None
    vapi_api_url: Optional[str] = None
    partial_debounce_ms: Optional[int] = None
    idle_auto_pass_seconds: Optional[int] = None
    min_partial_chars: Optional[int] = None
    time_warning_seconds: Optional[int] = None
    connect_timeout_seconds: Optional[int] = None
    disconnect_timeout_seconds: Optional[int] = None


@app.get("/api/settings")
async def get_settings():
    """現在の設定を取得 (秘密鍵は伏せる)"""
    return settings_manager.public_settings()


@app.post("/api/settings")
async def update_settings(settings: SettingsUpdate):
    """設定を更新 (閾値は次回起動から反映)"""
    settings_manager.update_settings(settings.model_dump(exclude_none=True))
    return {"status": "ok", "settings": settings_manager.public_settings()}


@app.get("/api/formats/{debate_format}/agenda")
async def get_agenda(debate_format: DebateFormat):
    """形式ごとのフェーズ一覧"""
    return [phase.model_dump() for phase in phases_for(debate_format)]


@app.get("/api/session")
async def get_session():
    """現在のセッションのスナップショット"""
    return session_controller.snapshot().model_dump(mode="json")


@app.post("/api/session/advance-phase")
async def advance_phase():
    """次のフェーズへ"""
    try:
        advanced = await session_controller.advance_phase()
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {
        "advanced": advanced,
        "session": session_controller.snapshot().model_dump(mode="json")
    }


@app.post("/api/session/stop")
async def stop_session():
    """セッション終了 (何度呼んでも安全)"""
    await session_controller.stop()
    return {"status": session_controller.status.value}


@app.get("/api/analysis")
async def get_analysis(call_id: Optional[str] = Query(None, alias="callId")):
    """通話分析の取得"""
    if not call_id:
        raise HTTPException(status_code=400, detail="Call ID is required")
    try:
        report = await get_analysis_client().fetch_analysis(call_id)
    except AnalysisError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return report.model_dump()


@app.get("/api/notes/{name}")
async def get_notes(name: str):
    data = storage.load(notes_key(name))
    return {"text": (data or {}).get("text", "")}


@app.put("/api/notes/{name}")
async def put_notes(name: str, body: NotesBody):
    storage.save(notes_key(name), body.model_dump())
    return {"status": "ok"}


@app.get("/api/sessions/last")
async def get_last_session():
    """最後に終了したセッションの記録"""
    record = session_controller.last_record()
    if record is None:
        raise HTTPException(status_code=404, detail="No completed session yet")
    return record.model_dump(mode="json")


# WebSocket エンドポイント

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """音声SDKの中継とUIコマンド"""
    await handle_websocket(websocket, session_controller)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", os.getenv("BACKEND_PORT", "8005"))),
        reload=True,
        log_level="info"
    )
