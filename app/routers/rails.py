"""Rail connectivity checks."""
from fastapi import APIRouter, Depends

from app.models.payment import Rail
from app.schemas.account import ConnectionCheckRead
from app.services.provider_gateway import ProviderGateway, get_gateway

router = APIRouter(prefix="/rails", tags=["rails"])


@router.get("/{rail}/status", response_model=ConnectionCheckRead)
async def rail_status(rail: Rail, gateway: ProviderGateway = Depends(get_gateway)):
    check = await gateway.test_connection(rail)
    return ConnectionCheckRead(rail=check.rail, success=check.success, error=check.error)
