"""Invoice pipeline orchestrator.

Runs one uploaded document through classification, extraction, duplicate
check and persistence. Stages are strictly sequential and each terminal
state (success or failure) produces exactly one assistant message that is
saved to the chat thread before the run returns.

States::

    CLASSIFYING -> EXTRACTING -> DUPLICATE_CHECKING -> SAVING -> DONE
         |              |                |                |
         v              v                v                v
    REJECTED_NOT   EXTRACTION_       DUPLICATE_       SAVE_FAILED
    _INVOICE       FAILED            REJECTED

The run's invoice id is generated before classification and is shared by
every usage event of the run; it becomes the primary key of the invoice
row if one is saved.
"""

import base64
import binascii
import enum
import logging
import re
import time
import uuid
from typing import Literal

from prometheus_client import Counter, Histogram
from pydantic import BaseModel, Field

from services.agent.schema import (
    ClassificationResult,
    DuplicateCheckResult,
    ExistingInvoice,
    ExtractionResult,
)
from services.agent.service import DocumentAgent
from services.chat.repository import ChatMessage, ChatRepository
from services.invoices.repository import InvoiceRepository
from services.invoices.schema import InvoiceRecord
from services.shared.database import PersistenceError

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = re.compile(r"^data:image/[a-z]+;base64,")

pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Document processing runs by terminal state",
    ["outcome"],
)

pipeline_stage_duration_seconds = Histogram(
    "pipeline_stage_duration_seconds",
    "Pipeline stage duration in seconds",
    ["stage"],
    buckets=(0.01, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)


class PipelineState(str, enum.Enum):
    CLASSIFYING = "classifying"
    EXTRACTING = "extracting"
    DUPLICATE_CHECKING = "duplicate_checking"
    SAVING = "saving"
    DONE = "done"
    REJECTED_NOT_INVOICE = "rejected_not_invoice"
    EXTRACTION_FAILED = "extraction_failed"
    DUPLICATE_REJECTED = "duplicate_rejected"
    SAVE_FAILED = "save_failed"


class DocumentValidationError(ValueError):
    """Raised for malformed uploads before any stage runs."""


class ProcessedDocument(BaseModel):
    """An uploaded document already rendered to page images."""

    type: Literal["image", "pdf"]
    images: list[str] = Field(description="Base64 PNG page images in page order")
    original_file_name: str


class PipelineRun(BaseModel):
    """Outcome of one document-processing run."""

    invoice_id: str
    user_id: str
    chat_id: str
    state: PipelineState
    messages: list[ChatMessage] = Field(default_factory=list)
    invoice: InvoiceRecord | None = None
    classification: ClassificationResult | None = None
    extraction: ExtractionResult | None = None
    duplicate_check: DuplicateCheckResult | None = None


def _is_valid_base64(data: str) -> bool:
    if not data:
        return False
    try:
        decoded = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        return False
    return base64.b64encode(decoded).decode("ascii") == data


def validate_images(images: list[str], max_pages: int) -> list[str]:
    """Check page images and strip any data URL prefix.

    Args:
        images: Base64 page images, optionally as ``data:image/...`` URLs
        max_pages: Largest accepted page count

    Returns:
        Bare base64 strings in page order

    Raises:
        DocumentValidationError: If the document is empty, too long or any
            page is not valid base64
    """
    if not images:
        raise DocumentValidationError("Document contains no page images.")
    if len(images) > max_pages:
        raise DocumentValidationError(
            f"Document has {len(images)} pages; at most {max_pages} are supported."
        )

    pages = [DATA_URL_PREFIX.sub("", image) if isinstance(image, str) else "" for image in images]
    invalid = sum(1 for page in pages if not _is_valid_base64(page))
    if invalid:
        logger.error(f"Invalid image data detected: {invalid} of {len(pages)} pages")
        raise DocumentValidationError(
            "Invalid image data format. Please ensure the PDF is valid and try again."
        )
    return pages


def describe_failure(error: Exception) -> str:
    """User-facing explanation of a stage failure, chosen from the error text."""
    message = str(error)
    if "image" in message:
        return (
            "There was an issue processing the document images. "
            "Please ensure the PDF is valid and try again."
        )
    if "model" in message or "API" in message:
        return "There was an issue with the AI model. Please try again in a moment."
    return (
        "An error occurred while processing your invoice. "
        "Please try again or contact support."
    )


class InvoicePipeline:
    """Sequences the document stages and persists the outcome."""

    def __init__(
        self,
        agent: DocumentAgent,
        invoices: InvoiceRepository,
        chats: ChatRepository,
        max_pages: int = 20,
    ) -> None:
        self.agent = agent
        self.invoices = invoices
        self.chats = chats
        self.max_pages = max_pages

    def process_document(
        self, user_id: str, chat_id: str, document: ProcessedDocument
    ) -> PipelineRun:
        """Run the full pipeline for one uploaded document.

        Args:
            user_id: Owner of the document
            chat_id: Chat thread that receives the pipeline messages
            document: Uploaded document as page images

        Returns:
            The terminal state, persisted messages and the invoice if saved

        Raises:
            DocumentValidationError: If the upload is malformed (nothing runs)
            ChatAccessError: If the chat belongs to another user (nothing runs)
            PersistenceError: If the chat thread or a message cannot be saved
        """
        images = validate_images(document.images, self.max_pages)
        self.chats.ensure_chat(chat_id, user_id, title=document.original_file_name)

        run = PipelineRun(
            invoice_id=str(uuid.uuid4()),
            user_id=user_id,
            chat_id=chat_id,
            state=PipelineState.CLASSIFYING,
        )
        pages = "page" if len(images) == 1 else "pages"
        logger.info(
            f"Processing {document.type} '{document.original_file_name}' "
            f"({len(images)} {pages}) as run {run.invoice_id}"
        )

        # Classification
        start_time = time.time()
        try:
            run.classification = self.agent.classify_document(images, user_id, run.invoice_id)
        except Exception as e:
            logger.error(f"Classification failed for run {run.invoice_id}: {e}")
            return self._finish(
                run,
                PipelineState.REJECTED_NOT_INVOICE,
                "The uploaded file could not be classified as an invoice. "
                f"{describe_failure(e)}",
            )
        finally:
            self._observe(PipelineState.CLASSIFYING, start_time)

        if not run.classification.is_invoice:
            return self._finish(
                run,
                PipelineState.REJECTED_NOT_INVOICE,
                "The uploaded file is not an invoice. "
                f"Analysis details: {run.classification.reasoning}",
            )

        # Extraction, followed by the duplicate check against the user's invoices
        run.state = PipelineState.EXTRACTING
        start_time = time.time()
        try:
            run.extraction = self.agent.extract_invoice_data(images, user_id, run.invoice_id)
        except Exception as e:
            logger.error(f"Extraction failed for run {run.invoice_id}: {e}")
            return self._finish(
                run,
                PipelineState.EXTRACTION_FAILED,
                f"Failed to extract invoice data: {describe_failure(e)}",
            )
        finally:
            self._observe(PipelineState.EXTRACTING, start_time)

        extraction = run.extraction
        run.state = PipelineState.DUPLICATE_CHECKING
        start_time = time.time()
        try:
            existing = [
                ExistingInvoice(
                    vendor_name=invoice.vendor_name,
                    invoice_number=invoice.invoice_number,
                    invoice_amount=invoice.invoice_amount,
                )
                for invoice in self.invoices.list_by_user(user_id)
            ]
            run.duplicate_check = self.agent.check_for_duplicates(
                extraction.vendor_name,
                extraction.invoice_number,
                extraction.invoice_amount,
                existing,
                user_id,
                run.invoice_id,
            )
        except Exception as e:
            logger.error(f"Duplicate check failed for run {run.invoice_id}: {e}")
            return self._finish(
                run,
                PipelineState.EXTRACTION_FAILED,
                f"Failed to extract invoice data: {describe_failure(e)}",
            )
        finally:
            self._observe(PipelineState.DUPLICATE_CHECKING, start_time)

        if run.duplicate_check.is_duplicate:
            return self._finish(
                run,
                PipelineState.DUPLICATE_REJECTED,
                f"Duplicate invoice detected. This invoice from {extraction.vendor_name} "
                f"(Invoice #{extraction.invoice_number}, Amount: {extraction.invoice_amount}) "
                f"appears to already exist in the system. {run.duplicate_check.reasoning}",
            )

        # Persistence
        run.state = PipelineState.SAVING
        start_time = time.time()
        try:
            run.invoice = self.invoices.insert_invoice(
                InvoiceRecord(
                    id=run.invoice_id,
                    user_id=user_id,
                    chat_id=chat_id,
                    customer_name=extraction.customer_name,
                    vendor_name=extraction.vendor_name,
                    invoice_number=extraction.invoice_number,
                    invoice_date=extraction.invoice_date,
                    invoice_due_date=extraction.invoice_due_date,
                    invoice_amount=extraction.invoice_amount,
                    line_items=extraction.line_items,
                )
            )
        except PersistenceError as e:
            logger.error(f"Saving invoice failed for run {run.invoice_id}: {e}")
            return self._finish(
                run,
                PipelineState.SAVE_FAILED,
                f"Failed to save invoice from {extraction.vendor_name} "
                f"(Invoice #{extraction.invoice_number}). Please try again.",
            )
        finally:
            self._observe(PipelineState.SAVING, start_time)

        return self._finish(
            run,
            PipelineState.DONE,
            "Invoice processed successfully!\n\n"
            "**Invoice Details:**\n"
            f"- Vendor: {extraction.vendor_name}\n"
            f"- Invoice Number: {extraction.invoice_number}\n"
            f"- Amount: {extraction.invoice_amount}\n"
            f"- Date: {extraction.invoice_date}\n"
            f"- Due Date: {extraction.invoice_due_date}\n\n"
            "The invoice has been saved to your system.",
        )

    def _finish(self, run: PipelineRun, state: PipelineState, content: str) -> PipelineRun:
        run.state = state
        run.messages.append(self.chats.save_message(run.chat_id, "assistant", content))
        pipeline_runs_total.labels(outcome=state.value).inc()
        logger.info(f"Run {run.invoice_id} finished in state {state.value}")
        return run

    @staticmethod
    def _observe(stage: PipelineState, start_time: float) -> None:
        pipeline_stage_duration_seconds.labels(stage=stage.value).observe(time.time() - start_time)
