from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from storefront.accounts.models import PermissionModule, PermissionAction
from storefront.dependencies import service, get_current_user, require_permission
from storefront.returns.models import ReturnStatus
from storefront.returns.schemas import (
    ReturnCreate, ReturnStatusUpdate, ReturnResponse, ReturnEligibilityResponse,
)
from storefront.returns.service import ReturnService
from storefront.shared.utils import SuccessResponse

router = APIRouter(prefix="/returns", tags=["returns"])
admin_router = APIRouter(prefix="/admin/returns", tags=["returns"])


@router.get("/eligibility/{order_id}", response_model=SuccessResponse[ReturnEligibilityResponse])
async def check_eligibility(
    order_id: str,
    user: dict = Depends(get_current_user),
    returns: ReturnService = Depends(service("returns")),
):
    return SuccessResponse(data=ReturnEligibilityResponse(**await returns.eligibility(user, order_id)))


@router.post("", response_model=SuccessResponse[ReturnResponse], status_code=201)
async def create_return(
    data: ReturnCreate,
    user: dict = Depends(get_current_user),
    returns: ReturnService = Depends(service("returns")),
):
    doc = await returns.create(user, data)
    return SuccessResponse(data=ReturnResponse.from_doc(doc), message="Return requested")


@router.get("", response_model=SuccessResponse[List[ReturnResponse]])
async def list_my_returns(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_current_user),
    returns: ReturnService = Depends(service("returns")),
):
    docs = await returns.list_for_user(user["id"], skip=(page - 1) * limit, limit=limit)
    return SuccessResponse(data=[ReturnResponse.from_doc(d) for d in docs])


@router.get("/{return_id}", response_model=SuccessResponse[ReturnResponse])
async def get_return(
    return_id: str,
    user: dict = Depends(get_current_user),
    returns: ReturnService = Depends(service("returns")),
):
    return SuccessResponse(data=ReturnResponse.from_doc(await returns.get(user, return_id)))


@admin_router.get("", response_model=SuccessResponse[List[ReturnResponse]])
async def list_returns(
    status: Optional[ReturnStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: dict = Depends(require_permission(PermissionModule.RETURNS, PermissionAction.READ)),
    returns: ReturnService = Depends(service("returns")),
):
    docs = await returns.list_all(status, skip=(page - 1) * limit, limit=limit)
    return SuccessResponse(data=[ReturnResponse.from_doc(d) for d in docs])


@admin_router.put("/{return_id}/status", response_model=SuccessResponse[ReturnResponse])
async def update_return_status(
    return_id: str,
    data: ReturnStatusUpdate,
    admin: dict = Depends(require_permission(PermissionModule.RETURNS, PermissionAction.UPDATE)),
    returns: ReturnService = Depends(service("returns")),
):
    doc = await returns.update_status(admin, return_id, data)
    return SuccessResponse(data=ReturnResponse.from_doc(doc), message=f"Return {data.status.value}")
