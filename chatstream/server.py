"""chatstream server: conversations API and the streaming completion endpoint."""
import hmac
import logging
import os
import uuid

# Logging setup: structured format, file handler added in lifespan
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s | %(message)s"
_LOG_DATE_FORMAT = "%H:%M:%S"
logging.basicConfig(level=logging.INFO, format=_LOG_FORMAT, datefmt=_LOG_DATE_FORMAT)

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from chatstream import __version__
from chatstream.config import load_config, ChatStreamConfig
from chatstream.errors import BadRequestError, ConfigurationError
from chatstream.models import (
    Conversation, ConversationDetail, CreateConversationRequest,
    CreateMessageRequest, Message, StatusResponse,
)
from chatstream.storage.sqlite_db import SQLiteDB
from chatstream.llm.client import CompletionClient
from chatstream.pipeline.budget import PromptBudgeter
from chatstream.pipeline.completion import CompletionPipeline
from chatstream.pipeline.relay import SSE_HEADERS

logger = logging.getLogger(__name__)

NO_CONVERSATION_MESSAGE = "Invalid request. No Conversation provided."

# Global instances (process-wide services only; request state lives in RequestContext)
config: ChatStreamConfig = None
sqlite_db: SQLiteDB = None
llm_client: CompletionClient = None
pipeline: CompletionPipeline = None


def _configure_logging(cfg: ChatStreamConfig) -> None:
    root = logging.getLogger()
    root.setLevel(cfg.logging.level.upper())
    if cfg.logging.file:
        log_dir = os.path.dirname(cfg.logging.file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(cfg.logging.file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(file_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize all components on startup, cleanup on shutdown."""
    global config, sqlite_db, llm_client, pipeline

    config_path = os.environ.get("CHATSTREAM_CONFIG", "config.yaml")
    config = load_config(config_path)
    _configure_logging(config)

    db_dir = os.path.dirname(config.storage.db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    sqlite_db = SQLiteDB(db_path=config.storage.db_path)
    await sqlite_db.initialize()

    llm_client = CompletionClient(config)
    budgeter = PromptBudgeter(config.token_budget, config.prompt)
    pipeline = CompletionPipeline(sqlite_db, llm_client, budgeter)

    logger.info(f"[chatstream] Server initialized. Listening on {config.server.host}:{config.server.port}")

    yield

    await sqlite_db.close()
    await llm_client.close()
    logger.info("[chatstream] Server shutdown complete")


app = FastAPI(title="chatstream", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=False,  # bearer tokens, not cookies
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.exception_handler(BadRequestError)
async def _bad_request_handler(request: Request, exc: BadRequestError):
    return PlainTextResponse(exc.message, status_code=exc.http_status)


@app.exception_handler(ConfigurationError)
async def _configuration_handler(request: Request, exc: ConfigurationError):
    logger.error(f"[chatstream] Configuration error on {request.url.path}: {exc.message}")
    return PlainTextResponse(exc.message, status_code=exc.http_status)


# ============================================================
# Caller identity
# ============================================================

_bearer_scheme = HTTPBearer(auto_error=False)


async def _resolve_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
    """Resolve the caller's user id from the bearer token, or reject."""
    api_keys = config.server.api_keys if config else {}
    if not api_keys:
        return config.server.default_user if config else "local"
    if credentials is not None:
        presented = credentials.credentials.encode("utf-8")
        for token, user_id in api_keys.items():
            if hmac.compare_digest(presented, token.encode("utf-8")):
                return user_id
    raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ============================================================
# Completion stream
# ============================================================

@app.get("/completion")
async def completion(
    conversationId: str = "",
    user_id: str = Depends(_resolve_caller),
):
    """Stream the assistant's reply to the latest turn of a conversation."""
    if not conversationId:
        return PlainTextResponse(NO_CONVERSATION_MESSAGE, status_code=404)

    ctx = await pipeline.prepare(user_id, conversationId)
    relay = pipeline.open(ctx)
    return StreamingResponse(
        relay.stream(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# ============================================================
# Conversations API
# ============================================================

@app.get("/api/status")
async def get_status():
    return StatusResponse(status="running", version=__version__, model=config.models.completion)


@app.get("/api/conversations", response_model=list[Conversation])
async def list_conversations(user_id: str = Depends(_resolve_caller)):
    return await sqlite_db.list_conversations(user_id)


@app.post("/api/conversations", response_model=Conversation, status_code=201)
async def create_conversation(
    body: CreateConversationRequest,
    user_id: str = Depends(_resolve_caller),
):
    conversation = await sqlite_db.create_conversation(user_id, body.title)
    logger.info(f"[chatstream] Created conversation {conversation['id']} for {user_id}")
    return conversation


@app.get("/api/conversations/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(conversation_id: str, user_id: str = Depends(_resolve_caller)):
    conversation = await sqlite_db.get_conversation(user_id, conversation_id)
    if not conversation:
        raise HTTPException(404, "Conversation not found")
    messages = await sqlite_db.get_messages(user_id, conversation_id)
    return {"conversation": conversation, "messages": messages}


@app.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, user_id: str = Depends(_resolve_caller)):
    if not await sqlite_db.delete_conversation(user_id, conversation_id):
        raise HTTPException(404, "Conversation not found")
    logger.info(f"[chatstream] Deleted conversation {conversation_id} for {user_id}")
    return {"status": "deleted", "conversation_id": conversation_id}


@app.post(
    "/api/conversations/{conversation_id}/messages",
    response_model=Message,
    status_code=201,
)
async def create_message(
    conversation_id: str,
    body: CreateMessageRequest,
    user_id: str = Depends(_resolve_caller),
):
    """Store the user's turn. The client then opens /completion for the reply."""
    return await sqlite_db.insert_message(
        uuid.uuid4().hex, "user", body.text, user_id, conversation_id
    )


@app.delete("/api/conversations/{conversation_id}/messages/{message_id}")
async def delete_message(
    conversation_id: str,
    message_id: str,
    user_id: str = Depends(_resolve_caller),
):
    message = await sqlite_db.get_message(user_id, message_id)
    if not message or message["conversation_id"] != conversation_id:
        raise HTTPException(404, "Message not found")
    await sqlite_db.delete_message(user_id, message_id)
    return {"status": "deleted", "message_id": message_id}
