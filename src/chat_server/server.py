"""FastAPI application exposing the MyAi vault and chat session governor."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from vault.backup import BackupCodec
from vault.errors import (
    CorruptBackupError,
    DuplicateKeyError,
    NotFoundError,
    QuotaExceededError,
)
from vault.records import User
from vault.services import ConversationService, MemoryService, UserService
from vault.store import RecordStore

from . import __version__
from .config import load_config, session_policy
from .governor import ChatSession, SessionGovernor
from .llm import TextGenerator, create_from_config

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class CreateUserRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    timezone: Optional[str] = None
    ai_personality: Optional[Dict[str, Any]] = Field(
        default=None, description="tone, style, traits, responseLength, emotionalDepth, memoryFocus"
    )


class ChatRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    conversation_id: Optional[str] = Field(default=None, description="Current conversation; omit to start one.")
    message: str = Field(..., min_length=1)


class ChatResponse(BaseModel):
    conversation_id: str
    state: str
    message_count: int
    max_messages: int
    warning: bool
    rolled_over: bool = False
    resubmit: bool = False
    reply: Optional[str] = None


class UserRef(BaseModel):
    user_id: str = Field(..., min_length=1)


# -----------------------------
# Utilities
# -----------------------------
def _make_store(cfg: Dict[str, Any]) -> RecordStore:
    store_cfg = cfg.get("store", {})
    max_bytes = store_cfg.get("max_bytes")
    return RecordStore(
        store_cfg.get("data_dir") or "data",
        max_bytes=int(max_bytes) if max_bytes else None,
    )


def _make_codec(cfg: Dict[str, Any], store: RecordStore) -> Optional[BackupCodec]:
    backup_cfg = cfg.get("backup", {})
    passphrase = backup_cfg.get("passphrase")
    if passphrase is None or str(passphrase) == "":
        logger.warning("No backup passphrase configured; backup endpoints are disabled")
        return None
    return BackupCodec(store, str(passphrase), kdf_iterations=int(backup_cfg.get("kdf_iterations", 390000)))


def _error(status: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    store: Optional[RecordStore] = None,
    generator: Optional[TextGenerator] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    # Services
    store = store or _make_store(cfg)
    generator = generator or create_from_config(cfg)
    governor = SessionGovernor(store, policy=session_policy(cfg), generator=generator)
    codec = _make_codec(cfg, store)
    users = UserService(store)
    conversations = ConversationService(store)
    memories = MemoryService(store)

    app = FastAPI(title="MyAi Vault Server", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFoundError)
    def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, exc)

    @app.exception_handler(DuplicateKeyError)
    def _duplicate(request: Request, exc: DuplicateKeyError) -> JSONResponse:
        return _error(409, exc)

    @app.exception_handler(CorruptBackupError)
    def _corrupt(request: Request, exc: CorruptBackupError) -> JSONResponse:
        return _error(400, exc)

    @app.exception_handler(QuotaExceededError)
    def _quota(request: Request, exc: QuotaExceededError) -> JSONResponse:
        return _error(507, exc)

    @app.exception_handler(ValueError)
    def _invalid(request: Request, exc: ValueError) -> JSONResponse:
        return _error(400, exc)

    def _require_codec() -> BackupCodec:
        if codec is None:
            raise HTTPException(status_code=503, detail="Backup passphrase is not configured.")
        return codec

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "data_dir": str(store.root),
            "store_bytes": store.size_bytes(),
            "text_generator": generator is not None,
            "backup_enabled": codec is not None,
            "max_messages": governor.policy.max_messages,
        }

    # --------- users ----------
    @app.post("/users", status_code=201)
    def create_user(req: CreateUserRequest) -> Dict[str, Any]:
        if req.email and users.get_by_email(req.email):
            raise HTTPException(status_code=409, detail="User already exists with this email.")
        user = users.create(
            User(name=req.name, email=req.email, timezone=req.timezone, aiPersonality=req.ai_personality)
        )
        return user.to_dict()

    @app.delete("/users/{user_id}")
    def delete_account(user_id: str) -> Dict[str, Any]:
        users.delete_account(user_id)
        return {"deleted": True}

    # --------- chat ----------
    @app.post("/chat", response_model=ChatResponse)
    def chat(req: ChatRequest) -> ChatResponse:
        msg = (req.message or "").strip()
        if not msg:
            raise HTTPException(status_code=400, detail="Message cannot be empty.")
        if users.get(req.user_id) is None:
            raise HTTPException(status_code=404, detail="Unknown user.")

        session = ChatSession(user_id=req.user_id, conversation_id=req.conversation_id)
        result = governor.send_message(session, msg)
        return ChatResponse(
            conversation_id=result.conversation_id,
            state=result.status.state.value,
            message_count=result.status.message_count,
            max_messages=result.status.max_messages,
            warning=result.status.warning,
            rolled_over=result.rolled_over,
            resubmit=result.resubmit,
            reply=result.reply,
        )

    @app.get("/conversations")
    def list_conversations(
        user_id: str = Query(..., min_length=1),
        query: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        convs = conversations.search(user_id, query) if query else conversations.list(user_id)
        return [c.to_dict() for c in convs]

    @app.get("/conversations/{conversation_id}")
    def get_conversation(conversation_id: str, user_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
        conv = conversations.require(user_id, conversation_id)
        status = governor.status(user_id, conversation_id)
        return {**conv.to_dict(), "state": status.state.value, "warning": status.warning}

    @app.post("/conversations/{conversation_id}/rollover")
    def rollover(conversation_id: str, req: UserRef) -> Dict[str, Any]:
        session = ChatSession(user_id=req.user_id, conversation_id=conversation_id)
        return governor.rollover(session).to_dict()

    # --------- memories ----------
    @app.get("/memories")
    def list_memories(
        user_id: str = Query(..., min_length=1),
        query: str = "",
        tag: Optional[List[str]] = Query(default=None),
        limit: Optional[int] = Query(default=None, ge=1),
    ) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in memories.search(user_id, query, tags=tag, limit=limit)]

    @app.get("/memories/stats")
    def memory_stats(user_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
        return memories.stats(user_id)

    @app.delete("/memories/{memory_id}")
    def delete_memory(memory_id: str, user_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
        return {"deleted": memories.delete(user_id, memory_id)}

    # --------- backup ----------
    @app.post("/backup/export")
    def export_backup(req: UserRef) -> Dict[str, Any]:
        return _require_codec().export_envelope(req.user_id)

    @app.post("/backup/import")
    def import_backup(envelope: Dict[str, Any]) -> Dict[str, Any]:
        user = _require_codec().import_envelope(envelope)
        return {"imported": True, "user": user}

    return app
