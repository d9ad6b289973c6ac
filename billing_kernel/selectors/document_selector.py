"""
Module: billing_kernel.selectors.document_selector
Responsibility: Read-only document queries: a single composed document and
    filtered, sorted, paginated listings.
Architecture position: Kernel > Selectors.  May import from models/,
    domain/dtos and selectors/base.py.

Failure modes:
    - DocumentNotFoundError for unknown ids or ids of another company.
    - ValidationError for unknown sort keys or out-of-range page sizes.
"""

from dataclasses import dataclass
from datetime import date
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from billing_kernel.domain.dtos import DocumentInfo, Page, PaymentAllocationInfo
from billing_kernel.exceptions import DocumentNotFoundError, ValidationError
from billing_kernel.models.document import Document, PaymentAllocation
from billing_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class DocumentFilter:
    """Criteria of list_documents.  None means "any"."""

    document_type: str | None = None
    status: str | None = None
    payment_status: str | None = None
    party_id: UUID | None = None
    branch_id: UUID | None = None
    parent_document_id: UUID | None = None
    date_from: date | None = None
    date_to: date | None = None
    search: str | None = None
    open_only: bool = False


class DocumentSelector(BaseSelector[Document]):
    """
    Read path for composed documents.

    Contract:
        Returns DocumentInfo DTOs with lines; payment documents also carry
        their allocations.
    """

    SORT_KEYS = {
        "document_date": Document.document_date,
        "document_number": Document.document_number,
        "total_amount": Document.total_amount,
        "balance_amount": Document.balance_amount,
        "created_at": Document.created_at,
        "due_date": Document.due_date,
    }
    MAX_LIMIT = 500

    def get_document(self, document_id: UUID, company_id: UUID | None = None) -> DocumentInfo:
        document = self.session.execute(
            select(Document)
            .where(Document.id == document_id)
            .options(selectinload(Document.lines))
        ).scalar_one_or_none()
        if document is None or (company_id is not None and document.company_id != company_id):
            raise DocumentNotFoundError(str(document_id))
        return DocumentInfo.from_model(document, self._allocations(document.id))

    def get_by_number(self, company_id: UUID, document_number: str) -> DocumentInfo:
        document = self.session.execute(
            select(Document).where(
                Document.company_id == company_id,
                Document.document_number == document_number,
            )
        ).scalar_one_or_none()
        if document is None:
            raise DocumentNotFoundError(document_number)
        return DocumentInfo.from_model(document, self._allocations(document.id))

    def list_documents(
        self,
        company_id: UUID,
        filters: DocumentFilter | None = None,
        sort_by: str = "document_date",
        descending: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> Page[DocumentInfo]:
        """
        One page of the company's documents.

        Ties on the sort key are broken by document_number so pages are
        stable.
        """
        if sort_by not in self.SORT_KEYS:
            raise ValidationError("sort_by", f"must be one of {sorted(self.SORT_KEYS)}, got {sort_by!r}")
        if not 1 <= limit <= self.MAX_LIMIT:
            raise ValidationError("limit", f"must be within 1..{self.MAX_LIMIT}, got {limit}")
        if offset < 0:
            raise ValidationError("offset", f"must not be negative, got {offset}")

        conditions = [Document.company_id == company_id]
        f = filters or DocumentFilter()
        if f.document_type is not None:
            conditions.append(Document.document_type == f.document_type)
        if f.status is not None:
            conditions.append(Document.status == f.status)
        if f.payment_status is not None:
            conditions.append(Document.payment_status == f.payment_status)
        if f.party_id is not None:
            conditions.append(Document.party_id == f.party_id)
        if f.branch_id is not None:
            conditions.append(Document.branch_id == f.branch_id)
        if f.parent_document_id is not None:
            conditions.append(Document.parent_document_id == f.parent_document_id)
        if f.date_from is not None:
            conditions.append(Document.document_date >= f.date_from)
        if f.date_to is not None:
            conditions.append(Document.document_date <= f.date_to)
        if f.search:
            pattern = f"%{f.search.strip()}%"
            conditions.append(
                Document.document_number.ilike(pattern) | Document.party_name.ilike(pattern)
            )
        if f.open_only:
            conditions.append(Document.balance_amount > 0)

        total = self.session.execute(
            select(func.count()).select_from(Document).where(*conditions)
        ).scalar_one()

        key = self.SORT_KEYS[sort_by]
        order = [key.desc(), Document.document_number.desc()] if descending else [
            key.asc(),
            Document.document_number.asc(),
        ]
        rows = self.session.execute(
            select(Document)
            .where(*conditions)
            .options(selectinload(Document.lines))
            .order_by(*order)
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        return Page(
            items=tuple(DocumentInfo.from_model(row, self._allocations(row.id)) for row in rows),
            total=total,
            limit=limit,
            offset=offset,
        )

    def children_of(self, document_id: UUID) -> list[DocumentInfo]:
        rows = self.session.execute(
            select(Document)
            .where(Document.parent_document_id == document_id)
            .order_by(Document.document_date, Document.document_number)
        ).scalars()
        return [DocumentInfo.from_model(row) for row in rows]

    def _allocations(self, payment_id: UUID) -> tuple[PaymentAllocationInfo, ...]:
        rows = self.session.execute(
            select(PaymentAllocation)
            .where(PaymentAllocation.payment_id == payment_id)
            .order_by(PaymentAllocation.created_at, PaymentAllocation.document_id)
        ).scalars()
        return tuple(PaymentAllocationInfo(document_id=r.document_id, amount=r.amount) for r in rows)
