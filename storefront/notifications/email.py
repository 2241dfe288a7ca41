import logging
from typing import Optional

import httpx

from storefront.shared.money import from_paise
from storefront.shared.utils import Settings

logger = logging.getLogger("storefront.notifications")


class EmailService:
    """
    Transactional email over an HTTP email API.

    Delivery is best effort: failures are logged and never reach the caller,
    so an unreachable mail provider cannot fail a checkout or a webhook.
    """

    def __init__(self, settings: Settings):
        self.api_url = settings.EMAIL_API_URL
        self.api_key = settings.EMAIL_API_KEY
        self.sender = settings.EMAIL_FROM
        self.admin_email = settings.ADMIN_EMAIL
        self.timeout = settings.HTTP_TIMEOUT_SECONDS

    @property
    def enabled(self) -> bool:
        return bool(self.api_url)

    async def send(self, to: Optional[str], subject: str, html: str) -> bool:
        if not to:
            return False
        if not self.enabled:
            logger.info(f"Email delivery disabled, skipping '{subject}' to {to}")
            return False

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"from": self.sender, "to": [to], "subject": subject, "html": html}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(self.api_url, json=payload, headers=headers)
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error(f"Failed to send '{subject}' to {to}: {e}")
                return False
        return True

    # --- Templates ---

    async def send_order_confirmation(self, email: str, order: dict):
        rows = "".join(
            f"<tr><td>{item['name']}</td><td>{item['quantity']}</td>"
            f"<td>&#8377;{from_paise(item['unit_price'])}</td></tr>"
            for item in order.get("items", [])
        )
        html = (
            f"<h2>Thank you for your order!</h2>"
            f"<p>Order <b>{order['order_number']}</b> has been confirmed.</p>"
            f"<table>{rows}</table>"
            f"<p>Subtotal: &#8377;{from_paise(order['subtotal'])}<br>"
            f"Discount: &#8377;{from_paise(order['discount'])}<br>"
            f"Shipping: &#8377;{from_paise(order['shipping_cost'])}<br>"
            f"GST: &#8377;{from_paise(order['tax_amount'])}<br>"
            f"<b>Total: &#8377;{from_paise(order['total'])}</b></p>"
        )
        await self.send(email, f"Order Confirmed - {order['order_number']}", html)
        await self.send(
            self.admin_email,
            f"New order {order['order_number']}",
            f"<p>A new order worth &#8377;{from_paise(order['total'])} was placed.</p>",
        )

    async def send_order_shipped(self, email: str, order: dict, awb_code: str, courier_name: Optional[str]):
        html = (
            f"<h2>Your order is on its way</h2>"
            f"<p>Order <b>{order['order_number']}</b> was handed to {courier_name or 'our courier partner'}.</p>"
            f"<p>Tracking number: <b>{awb_code}</b></p>"
        )
        await self.send(email, f"Order Shipped - {order['order_number']}", html)

    async def send_order_delivered(self, email: str, order: dict):
        html = (
            f"<h2>Delivered</h2>"
            f"<p>Order <b>{order['order_number']}</b> has been delivered. We hope you love it.</p>"
            f"<p>Something not right? You can request a return from your orders page.</p>"
        )
        await self.send(email, f"Order Delivered - {order['order_number']}", html)

    async def send_order_cancelled(self, email: str, order: dict, reason: str, refund_amount: int):
        refund_line = (
            f"<p>A refund of &#8377;{from_paise(refund_amount)} will be processed in 5-7 business days.</p>"
            if refund_amount else ""
        )
        html = (
            f"<h2>Order cancelled</h2>"
            f"<p>Order <b>{order['order_number']}</b> has been cancelled.</p>"
            f"<p>Reason: {reason}</p>{refund_line}"
        )
        await self.send(email, f"Order Cancelled - {order['order_number']}", html)

    async def send_return_update(self, email: str, return_doc: dict):
        html = (
            f"<h2>Return update</h2>"
            f"<p>Your return <b>{return_doc['return_number']}</b> is now "
            f"<b>{return_doc['status'].replace('_', ' ')}</b>.</p>"
        )
        if return_doc.get("rejection_reason"):
            html += f"<p>Reason: {return_doc['rejection_reason']}</p>"
        await self.send(email, f"Return {return_doc['return_number']} updated", html)

    async def send_consultation_update(self, email: str, consultation: dict):
        html = (
            f"<h2>Consultation {consultation['status']}</h2>"
            f"<p>Your consultation on {consultation['preferred_date']:%d %b %Y} at "
            f"{consultation['preferred_time']} is now {consultation['status']}.</p>"
        )
        if consultation.get("meeting_link"):
            html += f"<p>Join here: <a href=\"{consultation['meeting_link']}\">{consultation['meeting_link']}</a></p>"
        if consultation.get("rejection_reason"):
            html += f"<p>Reason: {consultation['rejection_reason']}</p>"
        await self.send(email, "Consultation update", html)
