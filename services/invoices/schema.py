"""Invoice data models shared by extraction, persistence and the API.

Amounts, quantities and dates are kept as the literal strings printed on the
document; no locale-specific parsing happens at this boundary.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class LineItem(BaseModel):
    """A single itemized row of an invoice."""

    item_name: str = Field(description="Description or name of the product or service")
    item_quantity: str = Field(description="Quantity as printed, including units")
    item_price: str = Field(description="Unit price as printed, including currency symbol")
    item_total: str = Field(description="Line total as printed, including currency symbol")


class InvoiceRecord(BaseModel):
    """A persisted invoice, owned by one user and one chat thread."""

    id: str
    user_id: str
    chat_id: str
    customer_name: str
    vendor_name: str
    invoice_number: str
    invoice_date: str
    invoice_due_date: str
    invoice_amount: str
    line_items: list[LineItem] = Field(default_factory=list)
    created_at: datetime | None = None
