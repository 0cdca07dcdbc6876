# app.py: Attempt Conversation Engine
# - Synchronous FastAPI handlers; one evaluator call per student turn
# - Engine errors map to HTTP status codes via EngineError.status_code

import logging
import os
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, HTTPException

import conversation
import db
from errors import EngineError, TransientError
from schemas import (
    AttemptOut,
    ConversationRequest,
    ConversationResponse,
    MessageOut,
    ResultsResponse,
    RetryRequest,
    StartAttemptRequest,
)

logger = logging.getLogger(__name__)

_RETRY_HINT = "Please try again in a moment; your message has been saved."


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info(
            "Evaluator: %s (%s) | embeddings: %s",
            os.getenv("EVALUATOR_URL"),
            os.getenv("EVALUATOR_MODEL"),
            os.getenv("EMBEDDING_BACKEND"),
        )
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Attempt Conversation Engine", version="1.0.0", lifespan=_lifespan)


# ---------- Helpers ----------
def _http_error(exc: EngineError) -> HTTPException:
    detail = str(exc) or exc.__class__.__name__
    if isinstance(exc, TransientError):
        logger.warning("Transient failure: %s", exc)
        detail = f"{detail}. {_RETRY_HINT}"
    elif exc.status_code >= 500:
        logger.error("Engine failure: %s", exc)
    return HTTPException(status_code=exc.status_code, detail=detail)


# ---------- Endpoints ----------
@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/assessments/{assessment_id}/attempt", response_model=AttemptOut)
def start_attempt(assessment_id: int, body: StartAttemptRequest):
    try:
        return conversation.start_attempt(assessment_id, body.user_id)
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.get("/attempts/{attempt_id}/conversation", response_model=List[MessageOut])
def get_conversation(attempt_id: int):
    try:
        return conversation.get_conversation(attempt_id)
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.post("/attempts/{attempt_id}/conversation", response_model=ConversationResponse)
def post_message(attempt_id: int, body: ConversationRequest):
    try:
        return conversation.submit_message(
            attempt_id,
            body.assessment_id,
            body.message,
            finish_early_flag=body.finish_early,
        )
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.post("/attempts/{attempt_id}/conversation/retry", response_model=ConversationResponse)
def retry_message(attempt_id: int, body: RetryRequest):
    try:
        return conversation.retry_evaluation(attempt_id, body.assessment_id)
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.get("/attempts/{attempt_id}/results", response_model=ResultsResponse)
def get_results(attempt_id: int):
    try:
        return conversation.get_results(attempt_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
