"""Token usage ledger.

One event is recorded per real model invocation (cache hits are not
metered). Events are upserted by id and never deleted; the cost column is
derived from the pricing table unless the caller supplies one.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from services.cost.pricing import CostUnit, ModelPricer
from services.invoices.models import Invoice
from services.shared.database import Clock, as_utc, utcnow
from services.usage.models import OperationType, TokenUsage

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Raised when a usage event cannot be written or read."""


class TokenUsageEvent(BaseModel):
    """Usage of a single stage invocation.

    Attributes:
        invoice_id: Run correlation id shared by every stage of one document
        cost: Explicit cost; computed from the pricing table when omitted
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    invoice_id: str
    user_id: str
    operation_type: OperationType
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: Decimal | None = None
    cost_unit: CostUnit = CostUnit.USD
    model_used: str


class UsageRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    invoice_id: str
    user_id: str
    operation_type: OperationType
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: Decimal
    cost_unit: CostUnit
    model_used: str
    created_at: datetime


class UsageReportRow(BaseModel):
    """Usage event joined with its invoice; invoice fields are None for rejected runs."""

    id: str
    created_at: datetime
    invoice_id: str
    operation_type: OperationType
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: Decimal
    cost_unit: CostUnit
    model_used: str
    invoice_number: str | None = None
    vendor_name: str | None = None
    customer_name: str | None = None
    invoice_amount: str | None = None


class UsageSummary(BaseModel):
    total_invoices: int
    total_tokens_used: int
    total_cost_incurred: Decimal
    average_tokens_per_invoice: float
    average_cost_per_invoice: Decimal


def _to_record(row: TokenUsage) -> UsageRecord:
    record = UsageRecord.model_validate(row)
    record.created_at = as_utc(row.created_at)
    return record


class UsageLedger:
    """Append/update log of token usage events."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        pricer: ModelPricer | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.pricer = pricer or ModelPricer()
        self._clock = clock

    def record(self, event: TokenUsageEvent) -> UsageRecord:
        """Insert the event, or overwrite the stored event with the same id.

        Args:
            event: Usage event to store

        Returns:
            The stored record including the derived cost

        Raises:
            LedgerError: If the store fails
        """
        cost = event.cost
        if cost is None:
            cost = self.pricer.calculate_cost(
                event.model_used, event.input_tokens, event.output_tokens
            )

        try:
            with self._session_factory() as session:
                row = session.get(TokenUsage, event.id)
                if row is None:
                    row = TokenUsage(id=event.id, created_at=self._clock())
                    session.add(row)
                row.invoice_id = event.invoice_id
                row.user_id = event.user_id
                row.operation_type = event.operation_type
                row.input_tokens = event.input_tokens
                row.output_tokens = event.output_tokens
                row.total_tokens = event.total_tokens
                row.cost = cost
                row.cost_unit = event.cost_unit
                row.model_used = event.model_used
                session.commit()
                return _to_record(row)
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to record token usage {event.id}: {e}") from e

    def query_by_invoice(self, invoice_id: str, descending: bool = False) -> list[UsageRecord]:
        """All events of one run, oldest first unless ``descending``."""
        order = TokenUsage.created_at.desc() if descending else TokenUsage.created_at.asc()
        try:
            with self._session_factory() as session:
                rows = session.scalars(
                    select(TokenUsage).where(TokenUsage.invoice_id == invoice_id).order_by(order)
                ).all()
                return [_to_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to read token usage for invoice {invoice_id}: {e}") from e

    def query_by_user(
        self, user_id: str, since: datetime, descending: bool = True
    ) -> list[UsageReportRow]:
        """Events of a user since ``since``, left-joined with invoice metadata.

        The join is restricted to the user's own invoices, so usage of runs
        that never produced an invoice still appears with empty invoice fields.
        """
        order = TokenUsage.created_at.desc() if descending else TokenUsage.created_at.asc()
        statement = (
            select(
                TokenUsage,
                Invoice.invoice_number,
                Invoice.vendor_name,
                Invoice.customer_name,
                Invoice.invoice_amount,
            )
            .outerjoin(
                Invoice,
                and_(TokenUsage.invoice_id == Invoice.id, Invoice.user_id == user_id),
            )
            .where(TokenUsage.user_id == user_id, TokenUsage.created_at >= since)
            .order_by(order)
        )

        try:
            with self._session_factory() as session:
                results = session.execute(statement).all()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to read token usage for user {user_id}: {e}") from e

        return [
            UsageReportRow(
                id=usage.id,
                created_at=as_utc(usage.created_at),
                invoice_id=usage.invoice_id,
                operation_type=usage.operation_type,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                total_tokens=usage.total_tokens,
                cost=usage.cost,
                cost_unit=usage.cost_unit,
                model_used=usage.model_used,
                invoice_number=invoice_number,
                vendor_name=vendor_name,
                customer_name=customer_name,
                invoice_amount=invoice_amount,
            )
            for usage, invoice_number, vendor_name, customer_name, invoice_amount in results
        ]

    @staticmethod
    def summarize(rows: list[UsageReportRow]) -> UsageSummary:
        """Totals and per-run averages over a usage report.

        Runs are counted by distinct invoice id, so rejected documents count too.
        """
        total_invoices = len({row.invoice_id for row in rows})
        total_tokens = sum(row.total_tokens for row in rows)
        total_cost = sum((row.cost for row in rows), Decimal(0))

        return UsageSummary(
            total_invoices=total_invoices,
            total_tokens_used=total_tokens,
            total_cost_incurred=total_cost,
            average_tokens_per_invoice=total_tokens / total_invoices if total_invoices else 0.0,
            average_cost_per_invoice=total_cost / total_invoices if total_invoices else Decimal(0),
        )
