from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from automail.db.base import Base


class Automation(Base):
    __tablename__ = "automations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft", server_default="draft")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    steps: Mapped[list["AutomationStep"]] = relationship(
        back_populates="automation",
        cascade="all, delete-orphan",
        order_by="AutomationStep.step_index",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_automations_trigger_status", "trigger_type", "status"),
        Index("ix_automations_status_updated_at", "status", "updated_at"),
    )


class AutomationStep(Base):
    __tablename__ = "automation_steps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    automation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("automations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    subject: Mapped[str] = mapped_column(String(200), nullable=False, default="", server_default="")
    html_body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    use_ai_generation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    ai_purpose: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    ai_topic: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    skip_condition: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    automation: Mapped[Automation] = relationship(back_populates="steps")

    __table_args__ = (
        UniqueConstraint("automation_id", "step_index", name="uq_automation_steps_automation_index"),
    )
