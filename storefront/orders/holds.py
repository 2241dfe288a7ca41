from storefront.coupons.service import CouponService
from storefront.inventory.models import AdjustmentReason
from storefront.inventory.service import StockService


async def release_holds(stock: StockService, coupons: CouponService, order: dict, notes: str):
    """
    Give back what an order took at checkout: its stock and its coupon use.

    Callers must only call this after winning the guarded move of the order
    to ``cancelled`` so the holds are released exactly once.
    """
    order_id = str(order["_id"])
    await stock.release(
        order["items"], order["warehouse_id"], order_id,
        reason=AdjustmentReason.ORDER_CANCELLED, notes=notes,
    )
    coupon = order.get("coupon")
    if coupon:
        await coupons.release(coupon["id"], order["user_id"])
