"""Tenant and report models (read by the scheduling engine)."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, LargeBinary, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from reportcast.db.base import Base, TimestampMixin, UUIDMixin


class Tenant(Base, UUIDMixin, TimestampMixin):
    """An isolated customer account."""

    __tablename__ = "tenants"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # JSON array of domains, e.g. '["acme.com", "acme.co.uk"]'
    allowed_email_domains: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name={self.name!r})>"


class Report(Base, UUIDMixin, TimestampMixin):
    """A saved report whose chart is emailed by schedules."""

    __tablename__ = "reports"

    tenant_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Live query definition
    sql_query: Mapped[str | None] = mapped_column(Text)
    connection_id: Mapped[str | None] = mapped_column(String(36))

    # Last cached dataset
    data_json: Mapped[dict | list | None] = mapped_column(JSON)
    data_refreshed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Chart
    chart_config: Mapped[dict | None] = mapped_column(JSON)
    chart_image_data: Mapped[bytes | None] = mapped_column(LargeBinary)
    chart_image_error: Mapped[str | None] = mapped_column(Text)
    chart_image_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @property
    def has_live_query(self) -> bool:
        return bool(self.sql_query and self.connection_id)

    def __repr__(self) -> str:
        return f"<Report(id={self.id}, name={self.name!r})>"
