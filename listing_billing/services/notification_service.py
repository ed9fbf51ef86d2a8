"""Billing emails via Resend: receipts, card and plan changes, cancellations, failed renewals.

Delivery is best effort: failures are logged and never touch payment state.
"""

import asyncio
import logging
from pathlib import Path

import resend
from jinja2 import Environment, FileSystemLoader

from listing_billing.config import get_settings
from listing_billing.utils import format_major

logger = logging.getLogger(__name__)

_template_dir = Path(__file__).parent.parent / "templates" / "email"
_jinja_env = Environment(loader=FileSystemLoader(str(_template_dir)), autoescape=True)


async def send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send an email via Resend.

    Returns True on success, False on failure.
    """
    settings = get_settings()
    if not settings.resend_api_key:
        logger.warning("Resend API key not configured — skipping email")
        return False

    try:
        await asyncio.to_thread(
            resend.Emails.send,
            {
                "from": settings.email_from,
                "to": [to_email],
                "subject": subject,
                "html": html_body,
            },
        )
        logger.info("Billing email sent to %s", to_email)
        return True
    except Exception as e:
        logger.error("Failed to send email to %s: %s", to_email, e)
        return False


async def send_receipt(
    to_email: str | None,
    business_name: str,
    amount: int,
    transaction_id: str | None,
    plan_name: str | None = None,
    description: str = "Subscription payment",
) -> bool:
    if not to_email:
        return False
    html = _jinja_env.get_template("receipt.html").render(
        business_name=business_name,
        amount=format_major(amount),
        transaction_id=transaction_id,
        plan_name=plan_name,
        description=description,
    )
    return await send_email(to_email, f"Payment receipt — {business_name}", html)


async def send_cancellation_notice(to_email: str | None, business_name: str, plan_name: str | None, ends_at) -> bool:
    if not to_email:
        return False
    html = _jinja_env.get_template("cancellation.html").render(
        business_name=business_name,
        plan_name=plan_name,
        ends_at=ends_at.strftime("%B %d, %Y") if ends_at else None,
    )
    return await send_email(to_email, f"Subscription cancelled — {business_name}", html)


async def send_payment_failed_notice(to_email: str | None, business_name: str, plan_name: str | None) -> bool:
    if not to_email:
        return False
    html = _jinja_env.get_template("payment_failed.html").render(
        business_name=business_name,
        plan_name=plan_name,
    )
    return await send_email(to_email, f"Action needed: renewal failed for {business_name}", html)


async def send_payment_method_updated(to_email: str | None, business_name: str, last_four: str | None) -> bool:
    if not to_email:
        return False
    html = _jinja_env.get_template("payment_method_updated.html").render(
        business_name=business_name,
        last_four=last_four,
    )
    return await send_email(to_email, f"Payment method updated for {business_name}", html)


async def send_plan_change_notice(
    to_email: str | None,
    business_name: str,
    old_plan: str | None,
    new_plan: str,
    amount: int,
    is_downgrade: bool,
    transaction_id: str | None = None,
) -> bool:
    """Confirm an upgrade (with the amount charged) or a downgrade (nothing charged)."""
    if not to_email:
        return False
    html = _jinja_env.get_template("plan_change.html").render(
        business_name=business_name,
        old_plan=old_plan,
        new_plan=new_plan,
        amount=format_major(amount) if amount else None,
        is_downgrade=is_downgrade,
        transaction_id=transaction_id,
    )
    verb = "downgraded" if is_downgrade else "upgraded"
    return await send_email(to_email, f"{business_name} {verb} to {new_plan}", html)
