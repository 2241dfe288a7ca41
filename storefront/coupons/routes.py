from typing import List
from fastapi import APIRouter, Depends, Query, Request

from storefront.accounts.models import PermissionModule, PermissionAction
from storefront.coupons.schemas import (
    CouponCreate, CouponUpdate, CouponResponse, CouponValidateRequest, CouponValidateResponse,
)
from storefront.coupons.service import CouponService
from storefront.dependencies import service, get_current_user, require_permission
from storefront.shared.money import to_paise
from storefront.shared.security_config import limiter, COUPON_RATE
from storefront.shared.utils import SuccessResponse

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/validate", response_model=SuccessResponse[CouponValidateResponse])
@limiter.limit(COUPON_RATE)
async def validate_coupon(
    request: Request,
    data: CouponValidateRequest,
    user: dict = Depends(get_current_user),
    coupons: CouponService = Depends(service("coupons")),
):
    subtotal = to_paise(data.subtotal)
    coupon, discount = await coupons.validate(data.code, subtotal, user["id"])
    return SuccessResponse(
        data=CouponValidateResponse(
            code=coupon["code"],
            discount_type=coupon["discount_type"],
            discount=discount,
            final_amount=subtotal - discount,
        ),
        message="Coupon applied",
    )


@router.get("/active", response_model=SuccessResponse[List[CouponResponse]])
async def list_active_coupons(user: dict = Depends(get_current_user), coupons: CouponService = Depends(service("coupons"))):
    docs = await coupons.list_available()
    return SuccessResponse(data=[CouponResponse(**d) for d in docs])


@router.get("", response_model=SuccessResponse[List[CouponResponse]])
async def list_coupons(
    active_only: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    admin: dict = Depends(require_permission(PermissionModule.COUPONS, PermissionAction.READ)),
    coupons: CouponService = Depends(service("coupons")),
):
    docs = await coupons.list(active_only, skip=(page - 1) * limit, limit=limit)
    return SuccessResponse(data=[CouponResponse(**d) for d in docs])


@router.get("/{coupon_id}", response_model=SuccessResponse[CouponResponse])
async def get_coupon(
    coupon_id: str,
    admin: dict = Depends(require_permission(PermissionModule.COUPONS, PermissionAction.READ)),
    coupons: CouponService = Depends(service("coupons")),
):
    return SuccessResponse(data=CouponResponse(**await coupons.get(coupon_id)))


@router.post("", response_model=SuccessResponse[CouponResponse], status_code=201)
async def create_coupon(
    data: CouponCreate,
    admin: dict = Depends(require_permission(PermissionModule.COUPONS, PermissionAction.CREATE)),
    coupons: CouponService = Depends(service("coupons")),
):
    doc = await coupons.create(data)
    return SuccessResponse(data=CouponResponse(**doc), message="Coupon created")


@router.put("/{coupon_id}", response_model=SuccessResponse[CouponResponse])
async def update_coupon(
    coupon_id: str,
    data: CouponUpdate,
    admin: dict = Depends(require_permission(PermissionModule.COUPONS, PermissionAction.UPDATE)),
    coupons: CouponService = Depends(service("coupons")),
):
    doc = await coupons.update(coupon_id, data)
    return SuccessResponse(data=CouponResponse(**doc), message="Coupon updated")


@router.delete("/{coupon_id}", response_model=SuccessResponse[dict])
async def delete_coupon(
    coupon_id: str,
    admin: dict = Depends(require_permission(PermissionModule.COUPONS, PermissionAction.DELETE)),
    coupons: CouponService = Depends(service("coupons")),
):
    await coupons.delete(coupon_id)
    return SuccessResponse(message="Coupon deleted")
