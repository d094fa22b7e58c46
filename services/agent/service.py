"""Document agent: classification, extraction and duplicate checks.

Each stage follows the same steps:

1. Fingerprint the stage-tagged input.
2. Return a live cached result if there is one (no usage is recorded).
3. Otherwise invoke the model with the stage schema and instructions.
4. Store the result in the prompt cache (best effort).
5. Record a usage ledger event for the invocation (best effort).

Cache and ledger failures are logged and swallowed. Model failures propagate.
"""

import logging
import time
from typing import Any, TypeVar

from prometheus_client import Counter, Histogram
from pydantic import BaseModel, ValidationError

from services.agent.base import ImagePart, ModelClient, ModelMessage, TextPart, TokenUsage
from services.agent.prompts import (
    DUPLICATE_PROMPT,
    classification_prompt,
    duplicate_candidates_text,
    extraction_prompt,
)
from services.agent.schema import (
    ClassificationOutput,
    ClassificationResult,
    DuplicateCheckResult,
    DuplicateOutput,
    ExistingInvoice,
    ExtractionOutput,
    ExtractionResult,
)
from services.cache.service import (
    CLASSIFY_PREFIX,
    DUPLICATE_PREFIX,
    EXTRACT_PREFIX,
    CacheError,
    PromptCache,
    fingerprint,
)
from services.usage.models import OperationType
from services.usage.service import LedgerError, TokenUsageEvent, UsageLedger

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)

prompt_cache_lookups_total = Counter(
    "prompt_cache_lookups_total",
    "Prompt cache lookups by stage and result",
    ["stage", "result"],  # hit, miss, error
)

model_invocation_duration_seconds = Histogram(
    "model_invocation_duration_seconds",
    "Generative model call duration in seconds",
    ["operation"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 60.0),
)

model_tokens_total = Counter(
    "model_tokens_total",
    "Tokens consumed by model invocations",
    ["operation", "direction"],  # input, output
)


class DocumentAgent:
    """Runs the three document stages against a model client."""

    def __init__(
        self,
        model_client: ModelClient,
        cache: PromptCache | None = None,
        ledger: UsageLedger | None = None,
    ) -> None:
        """Initialize the agent.

        Args:
            model_client: Structured-output model client
            cache: Prompt cache; None disables caching
            ledger: Usage ledger; None disables metering
        """
        self.model_client = model_client
        self.cache = cache
        self.ledger = ledger

    @property
    def model_used(self) -> str:
        return self.model_client.model_id

    def classify_document(
        self, images: list[str], user_id: str, invoice_id: str
    ) -> ClassificationResult:
        """Decide whether the document is an invoice.

        Only the first page is shown to the model.

        Args:
            images: Base64 PNG page images, in page order
            user_id: Owner of the run
            invoice_id: Run correlation id

        Returns:
            The model's verdict with its token usage

        Raises:
            ValueError: If there are no page images
        """
        if not images:
            raise ValueError("Cannot classify a document without page images")
        messages = [
            ModelMessage(
                content=[
                    TextPart(text="Classify this document."),
                    ImagePart(image=images[0]),
                ]
            )
        ]
        return self._run_stage(
            operation=OperationType.CLASSIFICATION,
            prompt_hash=fingerprint(CLASSIFY_PREFIX, images),
            output_schema=ClassificationOutput,
            result_type=ClassificationResult,
            system_prompt=classification_prompt(len(images)),
            messages=messages,
            user_id=user_id,
            invoice_id=invoice_id,
        )

    def extract_invoice_data(
        self, images: list[str], user_id: str, invoice_id: str
    ) -> ExtractionResult:
        """Extract invoice fields from all pages in one call.

        An empty ``line_items`` list is a valid extraction.
        """
        if not images:
            raise ValueError("Cannot extract invoice data without page images")
        content: list[TextPart | ImagePart] = [TextPart(text="Extract the invoice data.")]
        content.extend(ImagePart(image=image) for image in images)
        return self._run_stage(
            operation=OperationType.EXTRACTION,
            prompt_hash=fingerprint(EXTRACT_PREFIX, images),
            output_schema=ExtractionOutput,
            result_type=ExtractionResult,
            system_prompt=extraction_prompt(len(images)),
            messages=[ModelMessage(content=content)],
            user_id=user_id,
            invoice_id=invoice_id,
        )

    def check_for_duplicates(
        self,
        vendor_name: str,
        invoice_number: str,
        invoice_amount: str,
        existing_invoices: list[ExistingInvoice],
        user_id: str,
        invoice_id: str,
    ) -> DuplicateCheckResult:
        """Judge whether the new invoice duplicates any existing one.

        One holistic judgment is returned for the whole candidate set; the
        matching itself is left to the model.
        """
        existing = [
            (invoice.vendor_name, invoice.invoice_number, invoice.invoice_amount)
            for invoice in existing_invoices
        ]
        payload = {
            "vendor_name": vendor_name,
            "invoice_number": invoice_number,
            "invoice_amount": invoice_amount,
            "existing_invoices": existing,
        }
        messages = [
            ModelMessage(
                content=[
                    TextPart(
                        text=duplicate_candidates_text(
                            vendor_name, invoice_number, invoice_amount, existing
                        )
                    )
                ]
            )
        ]
        return self._run_stage(
            operation=OperationType.DUPLICATE_CHECK,
            prompt_hash=fingerprint(DUPLICATE_PREFIX, payload),
            output_schema=DuplicateOutput,
            result_type=DuplicateCheckResult,
            system_prompt=DUPLICATE_PROMPT,
            messages=messages,
            user_id=user_id,
            invoice_id=invoice_id,
        )

    def _run_stage(
        self,
        operation: OperationType,
        prompt_hash: str,
        output_schema: type[BaseModel],
        result_type: type[ResultT],
        system_prompt: str,
        messages: list[ModelMessage],
        user_id: str,
        invoice_id: str,
    ) -> ResultT:
        stage = operation.value.lower()

        cached = self._cached_result(prompt_hash, result_type, stage)
        if cached is not None:
            logger.info(f"Using cached response for {stage} (run {invoice_id})")
            return cached

        start_time = time.time()
        response = self.model_client.invoke(output_schema, system_prompt, messages)
        model_invocation_duration_seconds.labels(operation=operation.value).observe(
            time.time() - start_time
        )

        usage = response.usage
        model_tokens_total.labels(operation=operation.value, direction="input").inc(
            usage.prompt_tokens
        )
        model_tokens_total.labels(operation=operation.value, direction="output").inc(
            usage.completion_tokens
        )

        fields: dict[str, Any] = response.output.model_dump()
        result = result_type.model_validate({**fields, "token_usage": usage.model_dump()})

        self._store_result(prompt_hash, result, usage.total_tokens)
        self._record_usage(operation, usage, user_id, invoice_id)
        return result

    def _cached_result(
        self, prompt_hash: str, result_type: type[ResultT], stage: str
    ) -> ResultT | None:
        if self.cache is None:
            return None

        try:
            cached = self.cache.lookup(prompt_hash)
        except CacheError as e:
            logger.warning(f"Prompt cache lookup failed for {stage}, calling model: {e}")
            prompt_cache_lookups_total.labels(stage=stage, result="error").inc()
            return None

        if cached is None:
            prompt_cache_lookups_total.labels(stage=stage, result="miss").inc()
            return None

        try:
            result = result_type.model_validate_json(cached.cached_response)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable cached {stage} response: {e}")
            prompt_cache_lookups_total.labels(stage=stage, result="error").inc()
            return None

        prompt_cache_lookups_total.labels(stage=stage, result="hit").inc()
        return result

    def _store_result(self, prompt_hash: str, result: BaseModel, total_tokens: int) -> None:
        if self.cache is None:
            return
        try:
            self.cache.store(prompt_hash, result.model_dump_json(), tokens_saved=total_tokens)
        except CacheError as e:
            logger.warning(f"Failed to store prompt cache entry: {e}")

    def _record_usage(
        self, operation: OperationType, usage: TokenUsage, user_id: str, invoice_id: str
    ) -> None:
        if self.ledger is None:
            return
        try:
            self.ledger.record(
                TokenUsageEvent(
                    invoice_id=invoice_id,
                    user_id=user_id,
                    operation_type=operation,
                    input_tokens=usage.prompt_tokens,
                    output_tokens=usage.completion_tokens,
                    total_tokens=usage.total_tokens,
                    model_used=self.model_used,
                )
            )
        except LedgerError as e:
            logger.error(f"Error saving token usage for run {invoice_id}: {e}")
