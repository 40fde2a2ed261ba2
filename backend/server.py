# server.py

import logging
import os
from typing import Optional

from flask import Flask, current_app, jsonify, request, send_from_directory
from flask_cors import CORS

from . import config
from . import llm_core as llm_core_module
from .attachments import AttachmentResolver
from .conversation_store import ConversationExists, ConversationNotFound, ConversationStore, NotConversationOwner
from .db import PERSISTENCE_ERRORS, Database
from .file_store import FILE_TYPES, BlobStore, FileStore
from .llm_core import OpenAIProvider
from .logging_conf import diagnostic_logger, setup_logging
from .profile_store import ProfileStore
from .prompting import PromptComposer
from .turns import TurnOrchestrator

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Wiring
# -----------------------------------------------------------------------------

class Services:
    """Everything a request handler needs, built once per app."""

    def __init__(
        self,
        db: Optional[Database] = None,
        provider=None,
        models=None,
        upload_dir: Optional[str] = None,
        diagnostics: Optional[logging.Logger] = None,
        backoff: Optional[float] = None,
        sleep=None,
    ):
        self.db = db or Database.from_env()
        self.conversations = ConversationStore(self.db)
        self.profiles = ProfileStore(self.db)
        self.blobs = BlobStore(upload_dir or config.upload_dir())
        self.files = FileStore(self.db, self.blobs)
        self.resolver = AttachmentResolver(self.files)
        self.composer = PromptComposer(self.resolver)
        self.orchestrator = TurnOrchestrator(
            self.conversations,
            self.profiles,
            self.composer,
            provider or OpenAIProvider(),
            models=models,
            backoff=backoff,
            sleep=sleep,
            diagnostics=diagnostics or diagnostic_logger(),
        )


def _services() -> Services:
    return current_app.extensions["nat"]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _resolve_user_context() -> dict:
    """Caller principal for this request.

    There is no authentication yet; every request acts as the configured local
    principal unless a client names one explicitly.
    """
    user_id = (request.headers.get("X-Nat-User") or "").strip() or config.local_user()
    return {"user_id": user_id}


def _error(message: str, status: int):
    resp = jsonify({"error": message})
    resp.status_code = status
    return resp


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ConversationNotFound)
    def _not_found(exc):
        return _error("Conversation not found", 404)

    @app.errorhandler(NotConversationOwner)
    def _not_owner(exc):
        return _error("Unauthorized", 403)

    @app.errorhandler(ConversationExists)
    def _exists(exc):
        return _error("Conversation already exists", 409)

    def _storage_failure(exc):
        logger.error("storage failure: %s", exc, exc_info=exc)
        return _error("storage_failure", 500)

    for exc_cls in PERSISTENCE_ERRORS:
        app.register_error_handler(exc_cls, _storage_failure)


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------

def _register_routes(app: Flask) -> None:
    @app.get("/health")
    @app.get("/api/health")
    def api_health():
        return jsonify({"ok": True})

    # -- profile ---------------------------------------------------------------

    @app.get("/profile")
    @app.get("/api/profile")
    def api_get_profile():
        ctx = _resolve_user_context()
        return jsonify(_services().profiles.get(ctx["user_id"]))

    @app.post("/profile")
    @app.post("/api/profile")
    def api_save_profile():
        ctx = _resolve_user_context()
        data = request.get_json(silent=True) or {}
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            return _error("name required", 400)
        preferences = data.get("preferences")
        if preferences is not None and not isinstance(preferences, dict):
            return _error("preferences must be an object", 400)
        profile = _services().profiles.save(ctx["user_id"], name, preferences)
        return jsonify(profile)

    # -- conversations ---------------------------------------------------------

    @app.get("/conversations")
    @app.get("/api/conversations")
    def api_list_conversations():
        ctx = _resolve_user_context()
        return jsonify(_services().conversations.list_for_user(ctx["user_id"]))

    @app.get("/conversations/<convo_id>")
    @app.get("/api/conversations/<convo_id>")
    def api_get_conversation(convo_id: str):
        ctx = _resolve_user_context()
        convo = _services().conversations.get(convo_id)
        if not convo or convo["user"] != ctx["user_id"]:
            return _error("Conversation not found", 404)
        return jsonify(convo)

    @app.post("/conversations")
    @app.post("/api/conversations")
    def api_create_conversation():
        ctx = _resolve_user_context()
        data = request.get_json(silent=True) or {}
        convo_id = data.get("id")
        if convo_id is not None and not isinstance(convo_id, str):
            return _error("id must be a string", 400)
        convo = _services().conversations.create(ctx["user_id"], convo_id)
        return jsonify(convo)

    @app.delete("/conversations")
    @app.delete("/api/conversations")
    def api_delete_all_conversations():
        ctx = _resolve_user_context()
        deleted = _services().conversations.delete_all(ctx["user_id"])
        logger.info("deleted %d conversations for %s", deleted, ctx["user_id"])
        return jsonify({"success": True, "deleted": deleted})

    @app.delete("/conversations/<convo_id>")
    @app.delete("/api/conversations/<convo_id>")
    def api_delete_conversation(convo_id: str):
        ctx = _resolve_user_context()
        _services().conversations.delete(ctx["user_id"], convo_id)
        return jsonify({"success": True})

    @app.post("/conversations/<convo_id>/messages")
    @app.post("/api/conversations/<convo_id>/messages")
    def api_conversation_message(convo_id: str):
        ctx = _resolve_user_context()
        data = request.get_json(silent=True) or {}
        content = data.get("content")
        file_id = data.get("fileId") or None
        if not isinstance(content, str):
            return _error("content required", 400)
        if not content.strip() and not file_id:
            return _error("empty_message", 400)

        result = _services().orchestrator.handle_turn(
            ctx["user_id"],
            convo_id,
            content,
            sender=data.get("sender") or "user",
            message_type=data.get("messageType") or "text",
            mode=data.get("mode"),
            file_id=file_id,
        )
        ai_msg = result.ai_message
        resp = jsonify({
            "success": True,
            "aiMessage": ai_msg,
            "userMessage": result.user_message,
            "conversationId": convo_id,
        })
        resp.headers["X-Nat-Model-Used"] = (ai_msg or {}).get("model", "")
        resp.headers["X-Nat-Error"] = "true" if (ai_msg or {}).get("isError") else "false"
        return resp

    # -- files -----------------------------------------------------------------

    @app.post("/upload")
    @app.post("/api/upload")
    def api_upload():
        ctx = _resolve_user_context()
        upload = request.files.get("file")
        if upload is None or not upload.filename:
            return _error("No file uploaded.", 400)
        file_type = (request.form.get("fileType") or "document").strip().lower()
        if file_type not in FILE_TYPES:
            return _error(f"fileType must be one of {', '.join(FILE_TYPES)}", 400)
        record = _services().files.save_upload(
            ctx["user_id"],
            upload.read(),
            upload.filename,
            file_type=file_type,
            mime_type=upload.mimetype or None,
        )
        return jsonify(record)

    @app.get("/files")
    @app.get("/api/files")
    def api_list_files():
        ctx = _resolve_user_context()
        return jsonify(_services().files.list_for_user(ctx["user_id"]))

    @app.get("/uploads/<path:filename>")
    def serve_upload(filename: str):
        return send_from_directory(_services().blobs.root, filename)

    # -- diagnostics -----------------------------------------------------------

    @app.get("/diag/llm")
    @app.get("/api/diag/llm")
    def api_diag_llm():
        models = _services().orchestrator.models
        out = {
            "has_key": bool(config.openai_api_key()),
            "base_url": config.openai_base_url(),
            "models": models,
            "offline": config.is_offline(),
        }
        try:
            llm_core_module.ping(models[0])
            out.update({"can_call": True, "model_used": models[0]})
        except Exception as exc:
            logger.error("diag_llm call failed", exc_info=exc)
            msg = f"{exc.__class__.__name__}: {exc}"
            lower = msg.lower()
            if "does not exist" in lower or "not found" in lower or "unknown model" in lower:
                code = "bad_model"
            elif "invalid api key" in lower or "unauthorized" in lower or "401" in lower:
                code = "bad_key"
            elif llm_core_module.is_rate_limit_error(exc):
                code = "rate_limited"
            else:
                code = "call_failed"
            out.update({"can_call": False, "error_code": code, "error": msg})
        return jsonify(out)


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------

def create_app(services: Optional[Services] = None) -> Flask:
    setup_logging()
    app = Flask(__name__)
    CORS(app)
    app.extensions["nat"] = services or Services()
    _register_error_handlers(app)
    _register_routes(app)
    return app


if __name__ == "__main__":
    create_app().run(host=os.environ.get("HOST", "127.0.0.1"), port=config.port(), debug=True)
