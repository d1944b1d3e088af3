"""
Document data preparation (``deal_kernel.domain.documents``).

Responsibility
--------------
Turn the opaque proposal payload and the structured contract details into
the key/value document handed to a template.  Template placeholders use
camelCase names (``clientName``, ``validUntilDate``); everything on the
Python side stays snake_case.

The proposal payload is schema-less here.  Only the keys this module
fills defaults for are interpreted; everything else is passed through so
that template-specific fields (waste allowance, equipment, ...) reach the
template untouched.  Whether a template's own fields are present is the
renderer's job.

Architecture position
---------------------
**Kernel domain layer** -- pure functions.  ZERO I/O.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field, fields
from datetime import date
from typing import Any

from deal_kernel.domain.formatting import (
    contract_number_for,
    format_date_range,
    format_long_date,
    parse_date,
    to_decimal,
    valid_until,
)
from deal_kernel.domain.ports import InquiryInfo
from deal_kernel.exceptions import ValidationFailedError

DEFAULT_VALIDITY_DAYS = 30
DEFAULT_TAX_RATE = 12
DEFAULT_PAYMENT_TERMS = "Net 30"


def _section(proposal_data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = proposal_data.get(name)
    if not value:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationFailedError(
            f"proposal_data.{name}", f"expected an object, got {type(value).__name__}"
        )
    return value


def _service_lines(proposal_data: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    value = proposal_data.get("services")
    if not value:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ValidationFailedError(
            "proposal_data.services", f"expected a list, got {type(value).__name__}"
        )
    for index, item in enumerate(value):
        if not isinstance(item, Mapping):
            raise ValidationFailedError(
                f"proposal_data.services[{index}]",
                f"expected an object, got {type(item).__name__}",
            )
    return list(value)


def validity_days_of(proposal_data: Mapping[str, Any], default: int = DEFAULT_VALIDITY_DAYS) -> int:
    days = _section(proposal_data, "terms").get("validityDays") or default
    try:
        return int(days)
    except (TypeError, ValueError):
        raise ValidationFailedError("terms.validityDays", f"not a whole number: {days!r}") from None


def check_proposal_shape(proposal_data: Mapping[str, Any]) -> None:
    """Reject a payload whose services, pricing or terms cannot be read."""
    _service_lines(proposal_data)
    _section(proposal_data, "pricing")
    validity_days_of(proposal_data)


def build_proposal_document(
    proposal_data: Mapping[str, Any],
    inquiry: InquiryInfo,
    issued_on: date,
    *,
    logo_url: str,
    created_on: date | None = None,
    default_validity_days: int = DEFAULT_VALIDITY_DAYS,
) -> dict[str, Any]:
    """Template data for a proposal document.

    ``issued_on`` is the document date.  The validity window runs from the
    proposal's creation date (``created_on``, defaulting to ``issued_on``)
    plus ``terms.validityDays``, falling back to ``default_validity_days``.
    Numeric service and pricing values are coerced so the ``currency``
    filter can format them.

    Raises:
        ValidationFailedError: ``services``, ``pricing`` or ``terms`` has the
            wrong shape, or an amount is not numeric.
    """
    services = _service_lines(proposal_data)
    pricing = _section(proposal_data, "pricing")
    terms = _section(proposal_data, "terms")
    days = validity_days_of(proposal_data, default_validity_days)
    data = {
        k: v for k, v in proposal_data.items() if k not in ("services", "pricing", "terms")
    }

    try:
        doc: dict[str, Any] = {
            "companyLogoUrl": logo_url,
            "proposalDate": format_long_date(issued_on),
            "validUntilDate": format_long_date(valid_until(created_on or issued_on, days)),
            "clientName": inquiry.name or "Valued Client",
            "clientPosition": inquiry.position or "",
            "clientCompany": inquiry.company or "",
            "clientAddress": inquiry.address or "",
            "clientEmail": inquiry.email,
            "clientPhone": inquiry.phone or "N/A",
            "services": [
                {
                    **service,
                    "unitPrice": to_decimal(service.get("unitPrice", 0)),
                    "subtotal": to_decimal(service.get("subtotal", 0)),
                }
                for service in services
            ],
            "pricing": {
                "subtotal": to_decimal(pricing.get("subtotal", 0)),
                "tax": to_decimal(pricing.get("tax") or 0),
                "discount": to_decimal(pricing.get("discount") or 0),
                "total": to_decimal(pricing.get("total", 0)),
                "taxRate": pricing.get("taxRate") or DEFAULT_TAX_RATE,
            },
            "terms": {
                "paymentTerms": terms.get("paymentTerms") or DEFAULT_PAYMENT_TERMS,
                "validityDays": days,
                "notes": terms.get("notes") or "",
            },
        }
    except (TypeError, ValueError) as exc:
        raise ValidationFailedError("proposal_data", str(exc)) from exc

    for key, value in data.items():
        if value is not None:
            doc[key] = value
    return doc


@dataclass(frozen=True)
class ContractDetails:
    """
    Structured contract fields entered by the requester (and optionally
    edited by an admin).  Stored as JSON on the contract with a few
    denormalized display columns.
    """

    contract_type: str | None = None
    client_name: str | None = None
    company_name: str | None = None
    client_email: str | None = None
    client_address: str | None = None
    contract_start_date: date | None = None
    contract_end_date: date | None = None
    service_latitude: str | None = None
    service_longitude: str | None = None
    collection_schedule: str | None = None
    collection_schedule_other: str | None = None
    waste_allowance: str | None = None
    special_clauses: str | None = None
    signatories: tuple[dict[str, Any], ...] = field(default_factory=tuple)
    rate_per_kg: str | None = None
    client_requests: str | None = None

    def __post_init__(self) -> None:
        if (
            self.contract_start_date is not None
            and self.contract_end_date is not None
            and self.contract_end_date < self.contract_start_date
        ):
            raise ValidationFailedError(
                "contract_end_date", "must not be before contract_start_date"
            )

    @property
    def duration(self) -> str | None:
        if self.contract_start_date is None or self.contract_end_date is None:
            return None
        return format_date_range(self.contract_start_date, self.contract_end_date)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> ContractDetails:
        """Build from stored JSON or caller input, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {k: v for k, v in values.items() if k in known}
        for key in ("contract_start_date", "contract_end_date"):
            if kwargs.get(key):
                try:
                    kwargs[key] = parse_date(kwargs[key])
                except ValueError as exc:
                    raise ValidationFailedError(key, str(exc)) from None
            else:
                kwargs[key] = None
        kwargs["signatories"] = tuple(kwargs.get("signatories") or ())
        return cls(**kwargs)

    def to_json(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("contract_start_date", "contract_end_date"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        data["signatories"] = list(self.signatories)
        data["contract_duration"] = self.duration
        return data


def build_contract_document(
    details: ContractDetails,
    proposal_number: str | None,
    issued_on: date,
) -> dict[str, Any]:
    """Template data for a contract document."""
    return {
        "contractNumber": contract_number_for(proposal_number),
        "contractDate": format_long_date(issued_on),
        "contractType": details.contract_type,
        "clientName": details.client_name,
        "companyName": details.company_name,
        "clientEmailContract": details.client_email,
        "clientAddress": details.client_address,
        "contractStartDate": format_long_date(details.contract_start_date),
        "contractEndDate": format_long_date(details.contract_end_date),
        "contractDuration": details.duration or "",
        "serviceLatitude": details.service_latitude,
        "serviceLongitude": details.service_longitude,
        "collectionSchedule": details.collection_schedule,
        "collectionScheduleOther": details.collection_schedule_other,
        "wasteAllowance": details.waste_allowance,
        "specialClauses": details.special_clauses,
        "signatories": list(details.signatories),
        "ratePerKg": details.rate_per_kg,
        "clientRequests": details.client_requests,
    }


def document_key(kind: str, day: date, filename: str) -> str:
    """Blob key namespaced by entity kind and date folder."""
    return f"{kind}/{day.isoformat()}/{filename}"


_SIGNATURES: tuple[tuple[bytes, str, str], ...] = (
    (b"%PDF", ".pdf", "application/pdf"),
    (
        b"PK",
        ".docx",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ),
    (b"\xd0\xcf\x11\xe0", ".doc", "application/msword"),
)


def sniff_document_type(data: bytes) -> tuple[str, str]:
    """(extension, content type) from magic bytes; unknown files are treated as PDF."""
    for magic, ext, content_type in _SIGNATURES:
        if data.startswith(magic):
            return ext, content_type
    return ".pdf", "application/pdf"
