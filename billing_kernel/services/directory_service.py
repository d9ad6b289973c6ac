"""
Collaborator directories -- company, branch, party and item lookups.

Returns CompanyInfo/BranchInfo/PartyInfo/ItemInfo DTOs instead of ORM
entities.  Every lookup is scoped to the company; an id that exists under
another company is reported as not found.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from billing_kernel.domain.dtos import BranchInfo, CompanyInfo, ItemInfo, PartyInfo
from billing_kernel.domain.tax import validate_tax_id
from billing_kernel.exceptions import (
    BranchNotFoundError,
    CompanyNotFoundError,
    ItemNotFoundError,
    PartyNotFoundError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.company import Branch, Company
from billing_kernel.models.item import Item
from billing_kernel.models.party import Party, PartyType
from billing_kernel.services.base import BaseService

logger = get_logger("services.directory")


class CompanyDirectory(BaseService[Company]):
    """Registered companies."""

    def _to_dto(self, company: Company) -> CompanyInfo:
        return CompanyInfo(
            id=company.id,
            name=company.name,
            tax_id=company.tax_id,
            is_active=company.is_active,
        )

    def resolve(self, company_id: UUID) -> CompanyInfo:
        company = self.session.get(Company, company_id)
        if company is None:
            raise CompanyNotFoundError(str(company_id))
        if not company.is_active:
            raise ValidationError("company_id", f"company {company_id} is inactive")
        return self._to_dto(company)

    def create_company(self, name: str, tax_id: str | None = None) -> CompanyInfo:
        company = Company(
            name=name,
            tax_id=validate_tax_id(tax_id, "tax_id") if tax_id else None,
        )
        self.session.add(company)
        self.session.flush()
        logger.info("company_created", extra={"company_id": str(company.id)})
        return self._to_dto(company)


class BranchDirectory(BaseService[Branch]):
    """Branches of a company."""

    def _to_dto(self, branch: Branch) -> BranchInfo:
        return BranchInfo(
            id=branch.id,
            company_id=branch.company_id,
            code=branch.code,
            name=branch.name,
            document_prefix=branch.document_prefix,
            is_active=branch.is_active,
        )

    def resolve(self, branch_id: UUID, company_id: UUID) -> BranchInfo:
        branch = self.session.get(Branch, branch_id)
        if branch is None or branch.company_id != company_id:
            raise BranchNotFoundError(str(branch_id))
        if not branch.is_active:
            raise ValidationError("branch_id", f"branch {branch.code} is inactive")
        return self._to_dto(branch)

    def create_branch(
        self,
        company_id: UUID,
        code: str,
        name: str,
        document_prefix: str | None = None,
    ) -> BranchInfo:
        branch = Branch(
            company_id=company_id,
            code=code,
            name=name,
            document_prefix=document_prefix,
        )
        self.session.add(branch)
        self.session.flush()
        logger.info(
            "branch_created",
            extra={"company_id": str(company_id), "branch_id": str(branch.id), "code": code},
        )
        return self._to_dto(branch)


class PartyDirectory(BaseService[Party]):
    """Customers and vendors of a company."""

    def _to_dto(self, party: Party) -> PartyInfo:
        return PartyInfo(
            id=party.id,
            company_id=party.company_id,
            party_code=party.party_code,
            party_type=party.party_type,
            name=party.name,
            tax_id=party.tax_id,
            advance_balance=party.advance_balance,
            is_active=party.is_active,
        )

    def resolve(
        self,
        party_id: UUID,
        company_id: UUID,
        party_type: str | None = None,
    ) -> PartyInfo:
        """
        Resolve a party of the company.

        Raises:
            PartyNotFoundError: Unknown id, or a party of another company.
            ValidationError: Inactive party, or a party of the wrong kind.
        """
        party = self.session.get(Party, party_id)
        if party is None or party.company_id != company_id:
            raise PartyNotFoundError(str(party_id))
        if not party.is_active:
            raise ValidationError("party_id", f"party {party.party_code} is inactive")
        if party_type is not None and party.party_type != party_type:
            raise ValidationError(
                "party_id",
                f"party {party.party_code} is a {party.party_type}, expected a {party_type}",
            )
        return self._to_dto(party)

    def create_party(
        self,
        company_id: UUID,
        party_code: str,
        party_type: PartyType | str,
        name: str,
        tax_id: str | None = None,
        email: str | None = None,
        phone: str | None = None,
        billing_address: dict | None = None,
        shipping_address: dict | None = None,
    ) -> PartyInfo:
        party_type = PartyType(party_type)
        party = Party(
            company_id=company_id,
            party_code=party_code,
            party_type=party_type.value,
            name=name,
            tax_id=validate_tax_id(tax_id, "tax_id") if tax_id else None,
            email=email,
            phone=phone,
            billing_address=billing_address,
            shipping_address=shipping_address,
            advance_balance=Decimal("0"),
        )
        self.session.add(party)
        self.session.flush()
        logger.info(
            "party_created",
            extra={
                "company_id": str(company_id),
                "party_id": str(party.id),
                "party_type": party_type.value,
            },
        )
        return self._to_dto(party)

    def find_by_code(self, company_id: UUID, party_code: str) -> PartyInfo | None:
        party = self.session.execute(
            select(Party).where(Party.company_id == company_id, Party.party_code == party_code)
        ).scalar_one_or_none()
        return self._to_dto(party) if party else None


class ItemCatalog(BaseService[Item]):
    """Items of a company."""

    def resolve(self, item_id: UUID, company_id: UUID) -> ItemInfo:
        item = self.session.get(Item, item_id)
        if item is None or item.company_id != company_id:
            raise ItemNotFoundError(str(item_id))
        if not item.is_active:
            raise ValidationError("item_id", f"item {item.item_code} is inactive")
        return ItemInfo.from_model(item)

    def create_item(
        self,
        company_id: UUID,
        item_code: str,
        name: str,
        tax_rate: Decimal = Decimal("0"),
        tax_code: str | None = None,
        selling_price: Decimal | None = None,
        purchase_price: Decimal | None = None,
        unit: str | None = None,
        tracks_inventory: bool = True,
    ) -> ItemInfo:
        """
        Register an item with zero stock.

        Opening stock is booked through InventoryLedger.adjust_stock so that
        it has a movement behind it.
        """
        if tax_rate < 0:
            raise ValidationError("tax_rate", f"must not be negative, got {tax_rate}")
        item = Item(
            company_id=company_id,
            item_code=item_code,
            name=name,
            tax_rate=tax_rate,
            tax_code=tax_code,
            selling_price=selling_price,
            purchase_price=purchase_price,
            unit=unit,
            tracks_inventory=tracks_inventory,
            current_stock=Decimal("0"),
            reserved_stock=Decimal("0"),
            available_stock=Decimal("0"),
        )
        self.session.add(item)
        self.session.flush()
        logger.info(
            "item_created",
            extra={"company_id": str(company_id), "item_id": str(item.id), "item_code": item_code},
        )
        return ItemInfo.from_model(item)
