"""SQLAlchemy models for teams, the plan catalog, and subscriptions."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from planward_engine.common.models import Base, TimestampMixin, generate_uuid


class OrganizationModel(Base, TimestampMixin):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class TeamModel(Base, TimestampMixin):
    __tablename__ = "teams"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    # Teams inside an organization share its billing.
    organization_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("organizations.id"), nullable=True, index=True
    )
    billing_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_provider: Mapped[str | None] = mapped_column(String(50), nullable=True)


class ServiceModel(Base, TimestampMixin):
    """A catalog plan, usually mirrored from a billing provider product."""

    __tablename__ = "services"

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    features: Mapped[list] = mapped_column(JSON, default=list)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    prices: Mapped[list["PriceModel"]] = relationship(
        back_populates="service", order_by="PriceModel.amount"
    )


class PriceModel(Base, TimestampMixin):
    __tablename__ = "prices"

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=generate_uuid)
    service_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("services.id"), nullable=False, index=True
    )
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(10), default="usd")
    interval: Mapped[str | None] = mapped_column(String(20), nullable=True)

    service: Mapped["ServiceModel"] = relationship(back_populates="prices")


class SubscriptionModel(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=generate_uuid)
    team_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("teams.id"), nullable=False, index=True
    )
    organization_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("organizations.id"), nullable=True, index=True
    )
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(30), default="incomplete", index=True)
    quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
