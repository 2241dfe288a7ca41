from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from storefront.accounts.models import PermissionModule, PermissionAction
from storefront.dependencies import service, get_current_user, require_permission
from storefront.inventory.service import WarehouseService
from storefront.shared.utils import SuccessResponse, BusinessRuleException, ConflictException, NotFoundException, str_to_oid
from storefront.shipping.carrier import CarrierClient
from storefront.shipping.scheduler import ShipmentScheduler
from storefront.shipping.tracking import CarrierStatusService

shipping_router = APIRouter(prefix="/shipping", tags=["shipping"])
shipments_router = APIRouter(prefix="/admin/shipments", tags=["shipping"])
carrier_webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@shipping_router.get("/serviceability", response_model=SuccessResponse[dict])
async def check_serviceability(
    pincode: str = Query(..., pattern=r"^[1-9]\d{5}$"),
    weight: float = Query(0.5, gt=0, le=100),
    cod: bool = False,
    user: dict = Depends(get_current_user),
    warehouses: WarehouseService = Depends(service("warehouses")),
    carrier: CarrierClient = Depends(service("carrier")),
):
    warehouse = await warehouses.get_pickup_warehouse()
    options = await carrier.check_serviceability(warehouse["pincode"], pincode, weight, cod)
    return SuccessResponse(data={
        "pincode": pincode,
        "serviceable": bool(options),
        "couriers": [o.model_dump() for o in options],
    })


@shipments_router.post("/run", response_model=SuccessResponse[dict])
async def run_shipments(
    admin: dict = Depends(require_permission(PermissionModule.ORDERS, PermissionAction.UPDATE)),
    scheduler: ShipmentScheduler = Depends(service("scheduler")),
):
    summary = await scheduler.run_once()
    return SuccessResponse(data=summary, message="Shipment batch processed")


@shipments_router.post("/{order_id}/pickup", response_model=SuccessResponse[dict])
async def ship_order(
    order_id: str,
    admin: dict = Depends(require_permission(PermissionModule.ORDERS, PermissionAction.UPDATE)),
    scheduler: ShipmentScheduler = Depends(service("scheduler")),
):
    order = await scheduler.db.orders.find_one({"_id": str_to_oid(order_id)})
    if not order:
        raise NotFoundException("Order not found")
    if order.get("tracking_number"):
        raise BusinessRuleException("Order already has a shipment")

    await scheduler.reset_failures(order)
    shipment = await scheduler.process_order(order)
    if shipment is None:
        raise ConflictException("Order is already being handed to the courier or can no longer be shipped")
    return SuccessResponse(
        data={
            "order_id": order_id,
            "awb_code": shipment.get("awb_code"),
            "courier_name": shipment.get("courier_name"),
            "pickup_scheduled_date": shipment.get("pickup_scheduled_date"),
        },
        message="Shipment created",
    )


@carrier_webhooks_router.post("/shiprocket", response_model=SuccessResponse[dict])
async def shiprocket_webhook(
    payload: dict,
    x_api_key: Optional[str] = Header(None),
    tracking: CarrierStatusService = Depends(service("carrier_status")),
):
    result = await tracking.handle_webhook(payload, x_api_key)
    return SuccessResponse(data=result, message="Webhook processed")
