"""
Module: deal_kernel.models.document_template
Responsibility: ORM persistence for proposal and contract document
    templates (HTML body with placeholders plus structured config).
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/lifecycle.py only.

Invariants enforced (by TemplateService, per kind):
    - at most one active template per template_type;
    - at most one default template;
    - the default template cannot be soft-deleted.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from deal_kernel.db.base import TrackedBase, UUIDString
from deal_kernel.domain.lifecycle import TemplateKind


class DocumentTemplate(TrackedBase):
    __tablename__ = "document_templates"

    __table_args__ = (
        Index("idx_template_kind_type", "kind", "template_type"),
        Index("idx_template_kind_default", "kind", "is_default"),
    )

    kind: Mapped[TemplateKind] = mapped_column(String(20), nullable=False)
    template_type: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    html_body: Mapped[str] = mapped_column(Text, nullable=False)
    config: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<DocumentTemplate {self.kind}:{self.template_type} {self.name!r}>"
