"""Contractor rail account endpoints."""
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.payment import Rail
from app.schemas.account import ContractorAccountCreate, ContractorAccountRead
from app.services import contractor_accounts as accounts_service
from app.services.provider_gateway import ProviderGateway, get_gateway

router = APIRouter(prefix="/contractors", tags=["contractors"])


@router.post(
    "/{contractor_id}/accounts",
    response_model=ContractorAccountRead,
    status_code=status.HTTP_201_CREATED,
)
async def onboard_contractor(
    contractor_id: int,
    payload: ContractorAccountCreate,
    response: Response,
    db: Session = Depends(get_db),
    gateway: ProviderGateway = Depends(get_gateway),
):
    """Create the contractor's rail account, or return the existing one."""

    account, created = await accounts_service.onboard_contractor(
        db, contractor_id, payload, gateway=gateway, actor="api"
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    read = ContractorAccountRead.model_validate(account)
    read.created = created
    return read


@router.get("/{contractor_id}/accounts/{rail}", response_model=ContractorAccountRead)
def read_account(contractor_id: int, rail: Rail, db: Session = Depends(get_db)):
    return accounts_service.require_account(db, contractor_id, rail)
