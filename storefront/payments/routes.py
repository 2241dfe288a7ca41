from typing import Optional
from fastapi import APIRouter, Depends, Header, Request

from storefront.payments.service import PaymentService
from storefront.dependencies import service
from storefront.shared.utils import SuccessResponse

webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@webhooks_router.post("/razorpay", response_model=SuccessResponse[dict])
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    payments: PaymentService = Depends(service("payments")),
):
    # Signature is over the exact bytes received
    body = await request.body()
    result = await payments.handle_webhook(body, x_razorpay_signature)
    return SuccessResponse(data=result, message="Webhook processed")
