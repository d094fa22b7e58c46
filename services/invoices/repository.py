"""Relational persistence for invoices and their line items."""

import logging
import uuid

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from services.invoices.models import Invoice, InvoiceLineItem
from services.invoices.schema import InvoiceRecord, LineItem
from services.shared.database import Clock, PersistenceError, as_utc, utcnow

logger = logging.getLogger(__name__)


def _to_record(invoice: Invoice) -> InvoiceRecord:
    return InvoiceRecord(
        id=invoice.id,
        user_id=invoice.user_id,
        chat_id=invoice.chat_id,
        customer_name=invoice.customer_name,
        vendor_name=invoice.vendor_name,
        invoice_number=invoice.invoice_number,
        invoice_date=invoice.invoice_date,
        invoice_due_date=invoice.invoice_due_date,
        invoice_amount=invoice.invoice_amount,
        line_items=[
            LineItem(
                item_name=item.item_name,
                item_quantity=item.item_quantity,
                item_price=item.item_price,
                item_total=item.item_total,
            )
            for item in invoice.line_items
        ],
        created_at=as_utc(invoice.created_at),
    )


class InvoiceRepository:
    """Invoice store backed by the ``invoices`` and ``invoice_line_items`` tables."""

    def __init__(self, session_factory: sessionmaker[Session], clock: Clock = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def insert_invoice(self, record: InvoiceRecord) -> InvoiceRecord:
        """Insert an invoice together with its line items in one transaction.

        Args:
            record: Invoice to persist; ``record.id`` is kept as the primary key

        Returns:
            The stored invoice

        Raises:
            PersistenceError: If the insert fails (no rows are left behind)
        """
        now = self._clock()
        invoice = Invoice(
            id=record.id,
            user_id=record.user_id,
            chat_id=record.chat_id,
            customer_name=record.customer_name,
            vendor_name=record.vendor_name,
            invoice_number=record.invoice_number,
            invoice_date=record.invoice_date,
            invoice_due_date=record.invoice_due_date,
            invoice_amount=record.invoice_amount,
            created_at=now,
        )
        invoice.line_items = [
            InvoiceLineItem(
                id=str(uuid.uuid4()),
                position=position,
                item_name=item.item_name,
                item_quantity=item.item_quantity,
                item_price=item.item_price,
                item_total=item.item_total,
                created_at=now,
            )
            for position, item in enumerate(record.line_items)
        ]

        try:
            with self._session_factory() as session, session.begin():
                session.add(invoice)
        except SQLAlchemyError as e:
            logger.error(f"Failed to insert invoice {record.id}: {e}")
            raise PersistenceError(f"Failed to insert invoice {record.id}: {e}") from e

        logger.info(
            f"Saved invoice {record.invoice_number} from {record.vendor_name} "
            f"({len(record.line_items)} line items)"
        )
        return _to_record(invoice)

    def list_by_user(self, user_id: str) -> list[InvoiceRecord]:
        """All invoices of a user, newest first, with their line items."""
        try:
            with self._session_factory() as session:
                invoices = session.scalars(
                    select(Invoice)
                    .where(Invoice.user_id == user_id)
                    .order_by(Invoice.created_at.desc())
                ).all()
                return [_to_record(invoice) for invoice in invoices]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list invoices for user {user_id}: {e}") from e

    def get_by_id(self, invoice_id: str) -> InvoiceRecord | None:
        try:
            with self._session_factory() as session:
                invoice = session.get(Invoice, invoice_id)
                return _to_record(invoice) if invoice is not None else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read invoice {invoice_id}: {e}") from e

    def delete_invoice(self, invoice_id: str) -> bool:
        """Delete an invoice; its line items go with it.

        Returns:
            True if a row was deleted
        """
        try:
            with self._session_factory() as session, session.begin():
                result = session.execute(delete(Invoice).where(Invoice.id == invoice_id))
                deleted = result.rowcount > 0
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete invoice {invoice_id}: {e}") from e

        if deleted:
            logger.info(f"Deleted invoice {invoice_id}")
        return deleted
