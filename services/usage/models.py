"""ORM model for token usage events."""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from services.cost.pricing import CostUnit
from services.shared.database import Base


class OperationType(str, enum.Enum):
    CLASSIFICATION = "CLASSIFICATION"
    EXTRACTION = "EXTRACTION"
    DUPLICATE_CHECK = "DUPLICATE_CHECK"


class TokenUsage(Base):
    __tablename__ = "token_usage"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    # Run correlation id; no foreign key because rejected runs never create the invoice
    invoice_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    operation_type: Mapped[OperationType] = mapped_column(
        Enum(OperationType), default=OperationType.EXTRACTION, nullable=False
    )
    input_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cost: Mapped[Decimal] = mapped_column(Numeric(18, 10), default=Decimal(0), nullable=False)
    cost_unit: Mapped[CostUnit] = mapped_column(
        Enum(CostUnit), default=CostUnit.USD, nullable=False
    )
    model_used: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
