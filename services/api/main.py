"""FastAPI application for the invoice chat assistant.

Production-ready API with:
- Health and readiness checks for Kubernetes
- Document submission into a chat thread (classify, extract, dedupe, save)
- Freeform chat about invoices in the same threads
- Invoice listing and deletion
- Token usage report and prompt cache maintenance
- Prometheus metrics for monitoring

The caller's identity arrives in the ``X-User-Id`` header; authenticating it
is the job of the gateway in front of this service.

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import logging
import time
from datetime import timedelta

from fastapi import FastAPI, Header, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from services.agent.base import ModelInvocationError
from services.agent.factory import create_model_client
from services.agent.service import DocumentAgent
from services.api import metrics
from services.cache.service import CacheError, CacheStats, PromptCache
from services.chat.repository import ChatAccessError, ChatMessage, ChatRepository
from services.chat.service import ChatAssistant, ChatReply
from services.invoices.repository import InvoiceRepository
from services.invoices.schema import InvoiceRecord
from services.pipeline.service import (
    DocumentValidationError,
    InvoicePipeline,
    PipelineState,
    ProcessedDocument,
)
from services.shared.config import get_settings
from services.shared.database import PersistenceError, create_session_factory, utcnow
from services.usage.service import LedgerError, UsageLedger, UsageReportRow, UsageSummary

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Invoice Chat Assistant",
    description="Invoice classification, extraction and duplicate detection API",
    version=settings.service_version,
)

session_factory = create_session_factory(settings)
prompt_cache = (
    PromptCache(session_factory, default_ttl_ms=settings.prompt_cache_ttl_ms)
    if settings.prompt_cache_enabled
    else None
)
usage_ledger = UsageLedger(session_factory)
invoice_repository = InvoiceRepository(session_factory)
chat_repository = ChatRepository(session_factory)
agent = DocumentAgent(create_model_client(settings), cache=prompt_cache, ledger=usage_ledger)
pipeline = InvoicePipeline(
    agent, invoice_repository, chat_repository, max_pages=settings.max_document_pages
)
chat_assistant = ChatAssistant(agent.model_client, chat_repository)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint
    """
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=request.url.path,
    ).observe(duration)

    return response


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    model_provider: str
    model_available: bool


class DocumentRunResponse(BaseModel):
    """Outcome of processing one submitted document."""

    invoice_id: str
    state: PipelineState
    messages: list[ChatMessage]
    invoice: InvoiceRecord | None = None


class ChatMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=10_000)


class TokenUsageResponse(BaseModel):
    lookback_days: int
    usage: list[UsageReportRow]
    summary: UsageSummary


class CacheCleanupResponse(BaseModel):
    removed: int


def _require_cache() -> PromptCache:
    if prompt_cache is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Prompt cache is disabled",
        )
    return prompt_cache


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe."""
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes readiness probe.

    The service accepts traffic even when the model provider is not
    reachable; ``model_available`` reports it so operators can see why
    documents fail.
    """
    return ReadinessResponse(
        ready=True,
        model_provider=agent.model_client.provider_name,
        model_available=agent.model_client.is_available(),
    )


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns:
        Prometheus metrics in text format
    """
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.post(
    "/api/v1/chats/{chat_id}/documents",
    response_model=DocumentRunResponse,
    tags=["Documents"],
)
def submit_document(
    chat_id: str,
    document: ProcessedDocument,
    user_id: str = Header(..., alias="X-User-Id"),  # noqa: B008
) -> DocumentRunResponse:
    """Process an uploaded document already rendered to page images.

    Runs classification, extraction, duplicate check and persistence. Every
    outcome other than a malformed upload returns 200 with the terminal
    ``state`` and the assistant message saved to the chat thread.

    ## Usage Example

    ```bash
    curl -X POST "http://localhost:8000/api/v1/chats/chat-1/documents" \\
      -H "X-User-Id: user-1" -H "Content-Type: application/json" \\
      -d '{"type": "pdf", "images": ["iVBORw0..."], "original_file_name": "acme.pdf"}'
    ```

    ## Error Handling

    - Returns 400 if there are no pages, too many pages, or invalid base64
    - Returns 404 if the chat belongs to another user
    - Returns 500 if the chat thread or its messages cannot be saved

    Raises:
        HTTPException: If the document is malformed or persistence fails
    """
    metrics.document_page_count.observe(len(document.images))
    try:
        run = pipeline.process_document(user_id, chat_id, document)
    except DocumentValidationError as e:
        metrics.documents_submitted_total.labels(type=document.type, status="rejected").inc()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except ChatAccessError as e:
        metrics.documents_submitted_total.labels(type=document.type, status="rejected").inc()
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Chat {chat_id} not found"
        ) from e
    except PersistenceError as e:
        logger.error(f"Document processing failed in chat {chat_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save chat messages",
        ) from e

    metrics.documents_submitted_total.labels(type=document.type, status="accepted").inc()
    return DocumentRunResponse(
        invoice_id=run.invoice_id,
        state=run.state,
        messages=run.messages,
        invoice=run.invoice,
    )


def _get_owned_chat(chat_id: str, user_id: str) -> None:
    try:
        chat = chat_repository.get_chat(chat_id)
    except PersistenceError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e
    if chat is None or chat.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Chat {chat_id} not found"
        )


@app.get("/api/v1/chats/{chat_id}/messages", response_model=list[ChatMessage], tags=["Chats"])
def list_chat_messages(
    chat_id: str,
    user_id: str = Header(..., alias="X-User-Id"),  # noqa: B008
) -> list[ChatMessage]:
    """Messages of one of the caller's chat threads, oldest first."""
    _get_owned_chat(chat_id, user_id)
    try:
        return chat_repository.get_messages(chat_id)
    except PersistenceError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e


@app.post("/api/v1/chats/{chat_id}/messages", response_model=ChatReply, tags=["Chats"])
def post_chat_message(
    chat_id: str,
    request: ChatMessageRequest,
    user_id: str = Header(..., alias="X-User-Id"),  # noqa: B008
) -> ChatReply:
    """Ask a freeform question in a chat thread.

    The user message is saved, the model answers from the thread history and
    the answer is saved as an assistant message. A new chat id starts a thread.

    ## Error Handling

    - Returns 400 if the message is blank
    - Returns 404 if the chat belongs to another user
    - Returns 502 if the model call fails (the user message stays saved)
    """
    try:
        return chat_assistant.reply(chat_id, user_id, request.content)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except ChatAccessError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Chat {chat_id} not found"
        ) from e
    except ModelInvocationError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="There was an issue with the AI model. Please try again in a moment.",
        ) from e
    except PersistenceError as e:
        logger.error(f"Chat message failed in chat {chat_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save chat messages",
        ) from e


@app.get("/api/v1/invoices", response_model=list[InvoiceRecord], tags=["Invoices"])
def list_invoices(
    user_id: str = Header(..., alias="X-User-Id"),  # noqa: B008
) -> list[InvoiceRecord]:
    """The caller's invoices, newest first."""
    try:
        return invoice_repository.list_by_user(user_id)
    except PersistenceError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e


def _get_owned_invoice(invoice_id: str, user_id: str) -> InvoiceRecord:
    try:
        invoice = invoice_repository.get_by_id(invoice_id)
    except PersistenceError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e
    if invoice is None or invoice.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Invoice {invoice_id} not found"
        )
    return invoice


@app.get("/api/v1/invoices/{invoice_id}", response_model=InvoiceRecord, tags=["Invoices"])
def get_invoice(
    invoice_id: str,
    user_id: str = Header(..., alias="X-User-Id"),  # noqa: B008
) -> InvoiceRecord:
    return _get_owned_invoice(invoice_id, user_id)


@app.delete(
    "/api/v1/invoices/{invoice_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Invoices"],
)
def delete_invoice(
    invoice_id: str,
    user_id: str = Header(..., alias="X-User-Id"),  # noqa: B008
) -> Response:
    """Delete one of the caller's invoices together with its line items."""
    _get_owned_invoice(invoice_id, user_id)
    try:
        invoice_repository.delete_invoice(invoice_id)
    except PersistenceError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/api/v1/tokens", response_model=TokenUsageResponse, tags=["Usage"])
def get_token_usage(
    user_id: str = Header(..., alias="X-User-Id"),  # noqa: B008
) -> TokenUsageResponse:
    """Token usage of the caller over the configured lookback window.

    Usage of rejected documents is included with empty invoice fields.
    """
    since = utcnow() - timedelta(days=settings.usage_report_lookback_days)
    try:
        rows = usage_ledger.query_by_user(user_id, since)
    except LedgerError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e
    return TokenUsageResponse(
        lookback_days=settings.usage_report_lookback_days,
        usage=rows,
        summary=UsageLedger.summarize(rows),
    )


@app.get("/api/v1/cache/stats", response_model=CacheStats, tags=["Cache"])
def get_cache_stats() -> CacheStats:
    cache = _require_cache()
    try:
        return cache.stats()
    except CacheError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e


@app.post("/api/v1/cache/cleanup", response_model=CacheCleanupResponse, tags=["Cache"])
def cleanup_cache() -> CacheCleanupResponse:
    """Remove expired prompt cache entries."""
    cache = _require_cache()
    try:
        return CacheCleanupResponse(removed=cache.cleanup_expired())
    except CacheError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e
