from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Request

from storefront.accounts.models import PermissionModule, PermissionAction
from storefront.dependencies import service, get_current_user, require_permission
from storefront.orders.models import OrderStatus
from storefront.orders.schemas import (
    OrderCreate, OrderCancel, OrderStatusUpdate, OrderResponse, OrderPreviewResponse,
    CheckoutResponse, CancelCheckResponse, VerifyPaymentResponse,
)
from storefront.orders.service import OrderService
from storefront.payments.schemas import VerifyPaymentRequest, PaymentResponse
from storefront.shared.security_config import limiter, CHECKOUT_RATE
from storefront.shared.utils import SuccessResponse

router = APIRouter(prefix="/orders", tags=["orders"])
admin_router = APIRouter(prefix="/admin/orders", tags=["orders"])


@router.post("/preview", response_model=SuccessResponse[OrderPreviewResponse])
async def preview_order(
    data: OrderCreate,
    user: dict = Depends(get_current_user),
    orders: OrderService = Depends(service("orders")),
):
    return SuccessResponse(data=OrderPreviewResponse(**await orders.preview(user, data)))


@router.post("", response_model=SuccessResponse[CheckoutResponse], status_code=201)
@limiter.limit(CHECKOUT_RATE)
async def create_order(
    request: Request,
    data: OrderCreate,
    user: dict = Depends(get_current_user),
    orders: OrderService = Depends(service("orders")),
):
    result = await orders.create(user, data)
    return SuccessResponse(
        data=CheckoutResponse(
            order=OrderResponse.from_doc(result["order"]),
            payment=PaymentResponse(**result["payment"]),
            checkout=result["checkout"],
        ),
        message="Order placed",
    )


@router.post("/verify-payment", response_model=SuccessResponse[VerifyPaymentResponse])
async def verify_payment(
    data: VerifyPaymentRequest,
    user: dict = Depends(get_current_user),
    orders: OrderService = Depends(service("orders")),
):
    result = await orders.verify_payment(
        user, data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature
    )
    payment = result["payment"]
    return SuccessResponse(
        data=VerifyPaymentResponse(
            order=OrderResponse.from_doc(result["order"]),
            payment=PaymentResponse(**payment) if payment else None,
        ),
        message="Payment verified",
    )


@router.get("", response_model=SuccessResponse[List[OrderResponse]])
async def list_my_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_current_user),
    orders: OrderService = Depends(service("orders")),
):
    docs = await orders.list_for_user(user["id"], status, skip=(page - 1) * limit, limit=limit)
    return SuccessResponse(data=[OrderResponse.from_doc(d) for d in docs])


@router.get("/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(
    order_id: str,
    user: dict = Depends(get_current_user),
    orders: OrderService = Depends(service("orders")),
):
    return SuccessResponse(data=OrderResponse.from_doc(await orders.get(user, order_id)))


@router.get("/{order_id}/can-cancel", response_model=SuccessResponse[CancelCheckResponse])
async def can_cancel_order(
    order_id: str,
    user: dict = Depends(get_current_user),
    orders: OrderService = Depends(service("orders")),
):
    return SuccessResponse(data=CancelCheckResponse(**await orders.check_cancellable(user, order_id)))


@router.post("/{order_id}/cancel", response_model=SuccessResponse[OrderResponse])
async def cancel_order(
    order_id: str,
    data: OrderCancel,
    user: dict = Depends(get_current_user),
    orders: OrderService = Depends(service("orders")),
):
    order = await orders.cancel(user, order_id, data.reason)
    return SuccessResponse(data=OrderResponse.from_doc(order), message="Order cancelled")


@router.get("/{order_id}/tracking", response_model=SuccessResponse[dict])
async def track_order(
    order_id: str,
    user: dict = Depends(get_current_user),
    orders: OrderService = Depends(service("orders")),
):
    return SuccessResponse(data=await orders.tracking(user, order_id))


# --- Admin ---

@admin_router.get("", response_model=SuccessResponse[List[OrderResponse]])
async def list_orders(
    status: Optional[OrderStatus] = None,
    user_id: Optional[str] = None,
    order_number: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: dict = Depends(require_permission(PermissionModule.ORDERS, PermissionAction.READ)),
    orders: OrderService = Depends(service("orders")),
):
    docs = await orders.list_all(status, user_id, order_number, skip=(page - 1) * limit, limit=limit)
    return SuccessResponse(data=[OrderResponse.from_doc(d) for d in docs])


@admin_router.put("/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(
    order_id: str,
    data: OrderStatusUpdate,
    admin: dict = Depends(require_permission(PermissionModule.ORDERS, PermissionAction.UPDATE)),
    orders: OrderService = Depends(service("orders")),
):
    order = await orders.update_status(admin, order_id, data)
    return SuccessResponse(data=OrderResponse.from_doc(order), message=f"Order {data.status.value}")
