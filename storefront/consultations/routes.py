from typing import List, Literal, Optional
from fastapi import APIRouter, Depends, Query

from storefront.accounts.models import PermissionModule, PermissionAction
from storefront.consultations.models import ConsultationStatus, ConsultationPlatform
from storefront.consultations.schemas import ConsultationCreate, ConsultationStatusUpdate, ConsultationResponse
from storefront.consultations.service import ConsultationService
from storefront.dependencies import service, get_current_user, require_permission
from storefront.shared.utils import SuccessResponse

router = APIRouter(prefix="/consultations", tags=["consultations"])
admin_router = APIRouter(prefix="/admin/consultations", tags=["consultations"])


@router.post("", response_model=SuccessResponse[ConsultationResponse], status_code=201)
async def request_consultation(
    data: ConsultationCreate,
    user: dict = Depends(get_current_user),
    consultations: ConsultationService = Depends(service("consultations")),
):
    doc = await consultations.create(user, data)
    return SuccessResponse(data=ConsultationResponse(**doc), message="Consultation requested")


@router.get("", response_model=SuccessResponse[List[ConsultationResponse]])
async def list_my_consultations(
    status: Optional[ConsultationStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(get_current_user),
    consultations: ConsultationService = Depends(service("consultations")),
):
    docs = await consultations.list_for_user(user["id"], status, skip=(page - 1) * limit, limit=limit)
    return SuccessResponse(data=[ConsultationResponse(**d) for d in docs])


@router.get("/{consultation_id}", response_model=SuccessResponse[ConsultationResponse])
async def get_consultation(
    consultation_id: str,
    user: dict = Depends(get_current_user),
    consultations: ConsultationService = Depends(service("consultations")),
):
    return SuccessResponse(data=ConsultationResponse(**await consultations.get(user, consultation_id)))


@router.post("/{consultation_id}/cancel", response_model=SuccessResponse[ConsultationResponse])
async def cancel_consultation(
    consultation_id: str,
    user: dict = Depends(get_current_user),
    consultations: ConsultationService = Depends(service("consultations")),
):
    doc = await consultations.cancel(user, consultation_id)
    return SuccessResponse(data=ConsultationResponse(**doc), message="Consultation cancelled")


@admin_router.get("", response_model=SuccessResponse[List[ConsultationResponse]])
async def list_consultations(
    status: Optional[ConsultationStatus] = None,
    platform: Optional[ConsultationPlatform] = None,
    sort_by: Literal["created_at", "preferred_date"] = "created_at",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    admin: dict = Depends(require_permission(PermissionModule.CONSULTATIONS, PermissionAction.READ)),
    consultations: ConsultationService = Depends(service("consultations")),
):
    docs = await consultations.list_all(status, platform, sort_by, skip=(page - 1) * limit, limit=limit)
    return SuccessResponse(data=[ConsultationResponse(**d) for d in docs])


@admin_router.put("/{consultation_id}/status", response_model=SuccessResponse[ConsultationResponse])
async def update_consultation_status(
    consultation_id: str,
    data: ConsultationStatusUpdate,
    admin: dict = Depends(require_permission(PermissionModule.CONSULTATIONS, PermissionAction.UPDATE)),
    consultations: ConsultationService = Depends(service("consultations")),
):
    doc = await consultations.update_status(admin, consultation_id, data)
    return SuccessResponse(data=ConsultationResponse(**doc), message=f"Consultation {data.status.value}")
