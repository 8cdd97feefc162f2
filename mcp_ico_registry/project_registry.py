"""
ProjectRegistry Contract

The registry is where ICO projects are listed. Any account can list a project by
paying the listing fee; the project's owner can then either close it or mint exactly
one TokenSale for it. The registry deploys that TokenSale itself and keeps the only
forward reference to it on the project record.

Project lifecycle:
    LISTED --close_project--> CLOSED
    LISTED --create_new_erc20_token--> TOKEN_MINTED

Both transitions fire at most once and neither terminal state can be left.

The platform owner (SUPEROWNER) is the account that deployed the registry. It alone
can change the listing fee and withdraw the fees the registry has collected.
"""
from typing import List, Optional

from mcp_ico_registry import config
from mcp_ico_registry.chain import Blueprint, Context, public, view
from mcp_ico_registry.errors import (
    ContractRevert,
    NotAuthorizedAsListedProjectOwner,
    NotAuthorizedAsSuperOwner,
)
from mcp_ico_registry.schemas import (
    Address,
    ContractBalanceWithdrawn,
    Project,
    ProjectClosedByOwner,
    ProjectDetails,
    ProjectListed,
    ProjectStatus,
    TokenListed,
)
from mcp_ico_registry.token_sale import TokenSale
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class RegistryErrors:
    """Revert reasons"""

    INSUFFICIENT_LISTING_FEE = "Insufficient listing fee"
    PROJECT_NOT_FOUND = "Project does not exist"
    TOKEN_ALREADY_CREATED = "Token already created for this project"
    ONLY_PROJECT_OWNER = "Only the project owner can create a new token"
    NOT_LISTED = "Project is not in listed state"
    INVALID_FEE = "Listing fee cannot be negative"


class ProjectRegistry(Blueprint):
    """Registry of ICO projects and factory of their token sales."""

    superowner: Address  # Platform owner, fixed at deployment
    listing_fee: int  # Lamports required to list a project
    projects: List[Project]  # Indexed by project id

    @public
    def initialize(self, ctx: Context, listing_fee: Optional[int] = None) -> None:
        if listing_fee is None:
            listing_fee = config.DEFAULT_LISTING_FEE_LAMPORTS
        if listing_fee < 0:
            raise ContractRevert(RegistryErrors.INVALID_FEE)

        self.superowner = ctx.caller
        self.listing_fee = listing_fee
        self.projects = []
        logger.info(f"ProjectRegistry initialized by {ctx.caller} with listing fee {listing_fee} lamports")

    # --- Projects ---

    @public(payable=True)
    def list_new_project(self, ctx: Context, name: str, description: str, opening_date: int, closing_date: int) -> int:
        """List a new project owned by the caller. The whole payment is kept as the fee."""
        if ctx.value < self.listing_fee:
            raise ContractRevert(RegistryErrors.INSUFFICIENT_LISTING_FEE)

        project = Project(
            id=len(self.projects),
            name=name,
            description=description,
            owner=ctx.caller,
            opening_date=opening_date,
            closing_date=closing_date,
        )
        self.projects.append(project)
        self.syscall.emit_event(ProjectListed(id=project.id, name=name, owner=ctx.caller))
        logger.info(f"Project {project.id} '{name}' listed by {ctx.caller} (fee paid: {ctx.value} lamports)")
        return project.id

    @public
    def close_project(self, ctx: Context, project_id: int) -> None:
        project = self._get_project(project_id)
        if ctx.caller != project.owner:
            raise NotAuthorizedAsListedProjectOwner(ctx.caller, project_id)
        if project.status != ProjectStatus.LISTED:
            raise ContractRevert(RegistryErrors.NOT_LISTED)

        project.status = ProjectStatus.CLOSED
        self.syscall.emit_event(ProjectClosedByOwner(id=project_id))
        logger.info(f"Project {project_id} closed by its owner")

    @public
    def create_new_erc20_token(
        self,
        ctx: Context,
        project_id: int,
        token_name: str,
        token_symbol: str,
        total_supply: int,
        token_price: int,
    ) -> Address:
        """Deploy the project's one TokenSale, owned by the project owner."""
        project = self._get_project(project_id)
        if project.token_contract is not None:
            raise ContractRevert(RegistryErrors.TOKEN_ALREADY_CREATED)
        if ctx.caller != project.owner:
            raise ContractRevert(RegistryErrors.ONLY_PROJECT_OWNER)
        if project.status != ProjectStatus.LISTED:
            raise ContractRevert(RegistryErrors.NOT_LISTED)

        token_contract, _ = self.syscall.create_contract(
            TokenSale,
            token_name,
            token_symbol,
            total_supply,
            ctx.caller,
            project_id,
            token_price,
        )
        project.token_contract = token_contract
        project.status = ProjectStatus.TOKEN_MINTED
        self.syscall.emit_event(TokenListed(project_id=project_id, symbol=token_symbol, owner=ctx.caller))
        logger.info(f"Token {token_symbol} minted for project {project_id} at {token_contract}")
        return token_contract

    # --- Platform administration ---

    @public
    def update_listing_fee(self, ctx: Context, new_fee: int) -> None:
        self._check_superowner(ctx)
        if new_fee < 0:
            raise ContractRevert(RegistryErrors.INVALID_FEE)
        self.listing_fee = new_fee
        logger.info(f"Listing fee updated to {new_fee} lamports")

    @public
    def withdraw_contract_balance(self, ctx: Context) -> int:
        self._check_superowner(ctx)
        amount = self.syscall.get_current_balance()
        self.syscall.transfer(self.superowner, amount)
        self.syscall.emit_event(ContractBalanceWithdrawn(to=self.superowner, amount=amount))
        logger.info(f"Withdrew {amount} lamports of listing fees to {self.superowner}")
        return amount

    # --- Views ---

    @view
    def get_contract_balance(self) -> int:
        return self.syscall.get_current_balance()

    @view
    def get_superowner(self) -> Address:
        return self.superowner

    @view
    def get_listing_fee(self) -> int:
        return self.listing_fee

    @view
    def get_projects_count(self) -> int:
        return len(self.projects)

    @view
    def get_project(self, project_id: int) -> Project:
        return self._get_project(project_id).model_copy()

    @view
    def get_project_status(self, project_id: int) -> str:
        return self._get_project(project_id).status.label

    @view
    def get_project_details_by_id(self, project_id: int) -> ProjectDetails:
        project = self._get_project(project_id)
        details = ProjectDetails(
            project_name=project.name,
            project_description=project.description,
            project_owner=project.owner,
        )
        if project.token_contract is None:
            return details

        token_sale = self.syscall.get_contract(project.token_contract)
        details.token_contract = project.token_contract
        details.token_name = token_sale.name()
        details.token_symbol = token_sale.symbol()
        details.token_price = token_sale.token_price()
        return details

    # --- Internal methods ---

    def _get_project(self, project_id: int) -> Project:
        # bool is an int subclass but never a valid id
        if isinstance(project_id, bool) or not isinstance(project_id, int):
            raise ContractRevert(RegistryErrors.PROJECT_NOT_FOUND)
        if not 0 <= project_id < len(self.projects):
            raise ContractRevert(RegistryErrors.PROJECT_NOT_FOUND)
        return self.projects[project_id]

    def _check_superowner(self, ctx: Context) -> None:
        if ctx.caller != self.superowner:
            raise NotAuthorizedAsSuperOwner(ctx.caller)
