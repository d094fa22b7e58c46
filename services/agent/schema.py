"""Structured-output schemas for the three document stages.

The ``*Output`` models are what the model is asked to produce; the
``*Result`` models add the token usage of the call that produced them and
are what the Document Agent caches and returns.

Confidence values are reported by the model and are not range-checked here.
"""

from pydantic import BaseModel, Field

from services.agent.base import TokenUsage
from services.invoices.schema import LineItem


class ClassificationOutput(BaseModel):
    is_invoice: bool = Field(description="True only if every required invoice element is present")
    confidence: float = Field(description="Confidence between 0 and 1")
    reasoning: str = Field(description="Explanation of the decision and confidence level")


class ExtractionOutput(BaseModel):
    customer_name: str = Field(description="Customer / bill-to name")
    vendor_name: str = Field(description="Vendor / issuer name")
    invoice_number: str = Field(description="Invoice identifier as printed")
    invoice_date: str = Field(description="Issue date exactly as printed")
    invoice_due_date: str = Field(description="Due date exactly as printed")
    invoice_amount: str = Field(description="Total amount due as printed, with currency symbol")
    line_items: list[LineItem] = Field(description="Itemized rows; empty when not itemized")


class DuplicateOutput(BaseModel):
    is_duplicate: bool = Field(description="True if the new invoice duplicates an existing one")
    confidence: float = Field(description="Confidence between 0 and 1")
    reasoning: str = Field(description="Comparison results and explanation")


class ClassificationResult(ClassificationOutput):
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class ExtractionResult(ExtractionOutput):
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class DuplicateCheckResult(DuplicateOutput):
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class ExistingInvoice(BaseModel):
    """The fields of a stored invoice the duplicate judge compares against."""

    vendor_name: str
    invoice_number: str
    invoice_amount: str
