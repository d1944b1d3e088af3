"""
TemplateService -- proposal and contract document templates.

Responsibility:
    Administers document templates and resolves which template a proposal
    or contract should be rendered with.

Architecture position:
    Kernel > Services -- imperative shell.  Write operations are admin
    actions and own their transaction; the resolution reads are used
    inside the lifecycle services' transactions.

Invariants enforced (each scoped to a template kind):
    - At most one active template per template_type
      (DuplicateActiveTemplateError).
    - At most one default.  Setting a default clears the previous one in
      the same transaction; an inactive template cannot become default.
    - The current default cannot be soft-deleted.

Resolution order:
    get_by_type(type) -> active template of that type
                      -> get_default() -> flagged default (active)
                      -> most recently created active template
                      -> NoTemplatesConfiguredError

Failure modes:
    - TemplateNotFoundError for an unknown id.
    - NoTemplatesConfiguredError when a kind has no active templates.
    - ValidationFailedError for illegal default / delete requests.
    - ForbiddenError for non-admin writers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from deal_kernel.domain.authorization import (
    Actor,
    Operation,
    check_template_access,
    require,
)
from deal_kernel.domain.clock import Clock
from deal_kernel.domain.lifecycle import TemplateKind
from deal_kernel.exceptions import (
    DuplicateActiveTemplateError,
    NoTemplatesConfiguredError,
    TemplateNotFoundError,
    ValidationFailedError,
)
from deal_kernel.logging_config import get_logger
from deal_kernel.models.audit_event import AuditAction
from deal_kernel.models.document_template import DocumentTemplate
from deal_kernel.services.auditor_service import AuditorService
from deal_kernel.services.base import BaseService

logger = get_logger("services.template")

_ENTITY = "DocumentTemplate"

_UPDATABLE = ("name", "description", "html_body", "config", "template_type")


@dataclass(frozen=True)
class TemplateInfo:
    """Immutable DTO for a document template."""

    id: UUID
    kind: TemplateKind
    template_type: str
    name: str
    description: str | None
    html_body: str
    config: dict[str, Any]
    is_active: bool
    is_default: bool
    created_at: datetime | None


def _to_dto(template: DocumentTemplate) -> TemplateInfo:
    return TemplateInfo(
        id=template.id,
        kind=TemplateKind(template.kind),
        template_type=template.template_type,
        name=template.name,
        description=template.description,
        html_body=template.html_body,
        config=dict(template.config or {}),
        is_active=template.is_active,
        is_default=template.is_default,
        created_at=template.created_at,
    )


class TemplateService(BaseService):
    """
    Template store.

    ``category_templates`` maps an inquiry's declared service category to
    a proposal template type; unknown categories fall back to the default
    proposal template.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
        category_templates: Mapping[str, str] | None = None,
    ):
        super().__init__(session, clock, auditor)
        self._category_templates = dict(category_templates or {})

    # =========================================================================
    # Writes
    # =========================================================================

    def create(
        self,
        actor: Actor,
        kind: TemplateKind,
        template_type: str,
        name: str,
        html_body: str,
        description: str | None = None,
        config: dict[str, Any] | None = None,
        is_default: bool = False,
    ) -> TemplateInfo:
        require(check_template_access(actor, Operation.TEMPLATE_MANAGE), actor, Operation.TEMPLATE_MANAGE)
        if not html_body or not html_body.strip():
            raise ValidationFailedError("html_body", "must not be empty")
        if not template_type:
            raise ValidationFailedError("template_type", "is required")

        with self._transaction():
            self._ensure_type_free(kind, template_type)
            if is_default:
                self._clear_default(kind)

            template = DocumentTemplate(
                kind=kind,
                template_type=template_type,
                name=name,
                description=description,
                html_body=html_body,
                config=config or {},
                is_active=True,
                is_default=is_default,
                created_by=actor.actor_id,
                created_at=self._clock.now(),
                updated_at=self._clock.now(),
            )
            self.session.add(template)
            self.session.flush()

            self._auditor.record(
                _ENTITY,
                template.id,
                AuditAction.TEMPLATE_CREATED,
                actor.actor_id,
                {"kind": kind.value, "template_type": template_type, "is_default": is_default},
            )
            info = _to_dto(template)

        logger.info(
            "template_created",
            extra={
                "template_id": str(info.id),
                "kind": kind.value,
                "template_type": template_type,
                "is_default": is_default,
            },
        )
        return info

    def update(self, actor: Actor, template_id: UUID, **changes: Any) -> TemplateInfo:
        """Update name, description, html_body, config or template_type."""
        require(check_template_access(actor, Operation.TEMPLATE_MANAGE), actor, Operation.TEMPLATE_MANAGE)
        unknown = set(changes) - set(_UPDATABLE)
        if unknown:
            raise ValidationFailedError(sorted(unknown)[0], "field cannot be updated")
        if "html_body" in changes and not (changes["html_body"] or "").strip():
            raise ValidationFailedError("html_body", "must not be empty")

        with self._transaction():
            template = self._get(template_id)
            new_type = changes.get("template_type")
            if new_type and new_type != template.template_type and template.is_active:
                self._ensure_type_free(TemplateKind(template.kind), new_type)
            for key, value in changes.items():
                setattr(template, key, value)
            template.updated_at = self._clock.now()
            self.session.flush()
            self._auditor.record(
                _ENTITY,
                template.id,
                AuditAction.TEMPLATE_UPDATED,
                actor.actor_id,
                {"fields": sorted(changes)},
            )
            info = _to_dto(template)

        logger.info(
            "template_updated",
            extra={"template_id": str(template_id), "fields": sorted(changes)},
        )
        return info

    def set_default(self, actor: Actor, template_id: UUID) -> TemplateInfo:
        """Make ``template_id`` the only default of its kind."""
        require(check_template_access(actor, Operation.TEMPLATE_MANAGE), actor, Operation.TEMPLATE_MANAGE)

        with self._transaction():
            template = self._get(template_id)
            if not template.is_active:
                raise ValidationFailedError(
                    "is_default", "an inactive template cannot be the default"
                )
            self._clear_default(TemplateKind(template.kind))
            template.is_default = True
            template.updated_at = self._clock.now()
            self.session.flush()
            self._auditor.record(
                _ENTITY, template.id, AuditAction.TEMPLATE_DEFAULT_SET, actor.actor_id
            )
            info = _to_dto(template)

        logger.info(
            "template_default_set",
            extra={"template_id": str(template_id), "kind": info.kind.value},
        )
        return info

    def soft_delete(self, actor: Actor, template_id: UUID) -> TemplateInfo:
        """Deactivate a template. The current default cannot be removed."""
        require(check_template_access(actor, Operation.TEMPLATE_MANAGE), actor, Operation.TEMPLATE_MANAGE)

        with self._transaction():
            template = self._get(template_id)
            if template.is_default:
                raise ValidationFailedError(
                    "is_default",
                    "cannot delete the default template; set another default first",
                )
            template.is_active = False
            template.deactivated_at = self._clock.now()
            template.updated_at = self._clock.now()
            self.session.flush()
            self._auditor.record(
                _ENTITY, template.id, AuditAction.TEMPLATE_DEACTIVATED, actor.actor_id
            )
            info = _to_dto(template)

        logger.info("template_deactivated", extra={"template_id": str(template_id)})
        return info

    # =========================================================================
    # Reads and resolution
    # =========================================================================

    def get_by_id(self, template_id: UUID) -> TemplateInfo:
        return _to_dto(self._get(template_id))

    def find_by_id(self, template_id: UUID) -> TemplateInfo | None:
        template = self.session.get(DocumentTemplate, template_id)
        return _to_dto(template) if template else None

    def get_by_type(self, kind: TemplateKind, template_type: str | None) -> TemplateInfo:
        """Active template of ``template_type``, else the default of ``kind``."""
        if template_type:
            template = self.session.execute(
                select(DocumentTemplate)
                .where(
                    DocumentTemplate.kind == kind,
                    DocumentTemplate.template_type == template_type,
                    DocumentTemplate.is_active.is_(True),
                )
                .order_by(DocumentTemplate.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            if template is not None:
                return _to_dto(template)
        return self.get_default(kind)

    def get_default(self, kind: TemplateKind) -> TemplateInfo:
        """Flagged default, else the most recently created active template."""
        template = self.session.execute(
            select(DocumentTemplate)
            .where(
                DocumentTemplate.kind == kind,
                DocumentTemplate.is_default.is_(True),
                DocumentTemplate.is_active.is_(True),
            )
            .limit(1)
        ).scalar_one_or_none()

        if template is None:
            template = self.session.execute(
                select(DocumentTemplate)
                .where(
                    DocumentTemplate.kind == kind,
                    DocumentTemplate.is_active.is_(True),
                )
                .order_by(DocumentTemplate.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()

        if template is None:
            raise NoTemplatesConfiguredError(kind.value)
        return _to_dto(template)

    def list_templates(
        self,
        kind: TemplateKind,
        active_only: bool = True,
        template_type: str | None = None,
    ) -> list[TemplateInfo]:
        query = select(DocumentTemplate).where(DocumentTemplate.kind == kind)
        if active_only:
            query = query.where(DocumentTemplate.is_active.is_(True))
        if template_type:
            query = query.where(DocumentTemplate.template_type == template_type)
        rows = self.session.execute(
            query.order_by(DocumentTemplate.created_at.desc())
        ).scalars().all()
        return [_to_dto(t) for t in rows]

    def suggest_for_category(self, service_category: str | None) -> TemplateInfo:
        """Proposal template for an inquiry's declared service category."""
        template_type = self._category_templates.get(service_category or "")
        return self.get_by_type(TemplateKind.PROPOSAL, template_type)

    def suggest_for_contract_type(self, contract_type: str | None) -> TemplateInfo:
        return self.get_by_type(TemplateKind.CONTRACT, contract_type)

    # =========================================================================
    # Internal
    # =========================================================================

    def _get(self, template_id: UUID) -> DocumentTemplate:
        template = self.session.get(DocumentTemplate, template_id)
        if template is None:
            raise TemplateNotFoundError(str(template_id))
        return template

    def _ensure_type_free(self, kind: TemplateKind, template_type: str) -> None:
        existing = self.session.execute(
            select(DocumentTemplate.id).where(
                DocumentTemplate.kind == kind,
                DocumentTemplate.template_type == template_type,
                DocumentTemplate.is_active.is_(True),
            )
        ).first()
        if existing is not None:
            raise DuplicateActiveTemplateError(kind.value, template_type)

    def _clear_default(self, kind: TemplateKind) -> None:
        self.session.execute(
            update(DocumentTemplate)
            .where(
                DocumentTemplate.kind == kind,
                DocumentTemplate.is_default.is_(True),
            )
            .values(is_default=False, updated_at=self._clock.now())
            .execution_options(synchronize_session="fetch")
        )
