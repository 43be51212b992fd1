"""Support tools: tickets and hand-off to a human agent."""

from __future__ import annotations

import logging

from engezna_agent.errors import DataStoreError
from engezna_agent.models import ToolContext, ToolResult
from engezna_agent.tools.common import localized, order_filter, require_customer
from engezna_agent.tools.params import EscalateParams, SupportTicketParams

logger = logging.getLogger(__name__)


async def create_support_ticket(params: SupportTicketParams, ctx: ToolContext) -> ToolResult:
    customer_id = require_customer(ctx)
    order_id = None
    if params.order_id:
        order = await ctx.store.select_one("orders", columns="id, customer_id", filters=[order_filter(params.order_id)])
        if order is not None and order.get("customer_id") == customer_id:
            order_id = order["id"]

    rows = await ctx.store.insert("support_tickets", {
        "user_id": customer_id,
        "type": params.type,
        "subject": params.subject,
        "description": params.description,
        "order_id": order_id,
        "source": "ai_assistant",
        "status": "open",
        "priority": "high" if params.type == "payment" else "medium",
    })
    if not rows:
        raise DataStoreError("support_tickets insert returned no row")
    ticket = rows[0]
    reference = ticket.get("ticket_number") or ticket["id"]
    logger.info("Support ticket %s opened for customer %s", reference, customer_id)
    return ToolResult.success({
        "ticket_id": ticket["id"],
        "ticket_number": reference,
        "message": localized(
            ctx,
            f"تم إنشاء تذكرة الدعم رقم {reference}. سيتواصل معك فريق الدعم قريباً.",
            f"Support ticket {reference} created. Our team will contact you soon.",
        ),
    })


async def escalate_to_human(params: EscalateParams, ctx: ToolContext) -> ToolResult:
    logger.info("Escalation requested by %s: %s", ctx.rate_limit_key, params.reason)
    return ToolResult.success({
        "escalated": True,
        "reason": params.reason,
        "message": localized(
            ctx,
            "جاري تحويلك لموظف خدمة العملاء. سيتواصل معك في أقرب وقت.",
            "You are being transferred to a customer service agent who will contact you shortly.",
        ),
    })
