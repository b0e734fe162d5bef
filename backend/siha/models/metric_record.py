"""
SIHA Backend — MetricRecord SQLAlchemy Model
==============================================

What:  ORM model for the `metric_records` table.
Why:   Vitals estimated from camera input are stored alongside other health
       metrics, one row per measured quantity.
How:   Inherits from the declarative Base; Alembic reads it for migrations.
Who:   Written by MetricService when an analysis is saved.

Table Design:
    - One row per vital (heart_rate, oxygen_saturation, ...), not one per
      analysis, so every metric type shares the same time-series queries
    - value DECIMAL(10,2); confidence DECIMAL(3,2) in [0, 1]
    - source records where the value came from ("ai_face_analysis")
    - Composite index (user_id, metric_type, start_time) serves the
      "history of one metric for one user" query
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import Index, Numeric, String, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from siha.database import Base


class MetricRecord(Base):
    """A single timestamped health measurement for a user."""

    __tablename__ = "metric_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        comment="Owner of the measurement",
    )

    device_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        comment="Capturing device, when known",
    )

    # heart_rate, stress_level, oxygen_saturation, respiratory_rate, temperature, ...
    metric_type: Mapped[str] = mapped_column(String(50), nullable=False)

    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    unit: Mapped[str] = mapped_column(String(20), nullable=False)

    start_time: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    end_time: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )

    source: Mapped[str] = mapped_column(String(255), nullable=False)

    raw_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB, nullable=True)

    confidence: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(3, 2),
        nullable=True,
        comment="Estimator confidence in [0, 1]",
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_metric_records_user_type_start", "user_id", "metric_type", "start_time"),
        Index("idx_metric_records_start_time", "start_time"),
    )

    def __repr__(self) -> str:
        return (
            f"<MetricRecord(id={self.id}, type='{self.metric_type}', "
            f"value={self.value} {self.unit})>"
        )
