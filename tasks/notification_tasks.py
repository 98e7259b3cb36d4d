"""
tasks/notification_tasks.py
Celery task for the email copy of in-app notifications.

The in-app row is already saved by the dispatcher; this task only talks to
the email provider. Resend calls are retried with backoff by tenacity and
guarded by a circuit breaker so a provider outage fails fast.

Usage from the dispatcher:
    send_notification_email.delay(to_email=..., to_name=..., subject=..., message=...)
"""

import logging
from html import escape
from typing import Optional

import resend
from pybreaker import CircuitBreaker, CircuitBreakerError
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

email_breaker = CircuitBreaker(fail_max=5, reset_timeout=60, name="resend")


# ── Core Delivery ──────────────────────────────────────────────────────────────

def _render_html(to_name: str, subject: str, message: str, action_url: Optional[str]) -> str:
    button = ""
    if action_url:
        link = f"{settings.FRONTEND_URL.rstrip('/')}{action_url}"
        button = (
            f'<p style="margin-top: 24px;"><a href="{escape(link)}" '
            'style="background: #4F46E5; color: white; padding: 10px 18px; '
            'border-radius: 6px; text-decoration: none;">View session</a></p>'
        )
    return f"""
    <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <h2 style="color: #333;">{escape(subject)}</h2>
        <p style="color: #666;">Hi {escape(to_name)},</p>
        <p style="color: #666; line-height: 1.6;">{escape(message)}</p>
        {button}
        <p style="color: #999; font-size: 12px; margin-top: 24px;">
            You received this email because you have an account on {escape(settings.EMAIL_FROM_NAME)}.
        </p>
    </div>
    """


def _send_via_resend(to_email: str, to_name: str, subject: str, html_body: str) -> None:
    resend.api_key = settings.RESEND_API_KEY
    resend.Emails.send({
        "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
        "to": [f"{to_name} <{to_email}>"],
        "subject": subject,
        "html": html_body,
    })


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_not_exception_type(CircuitBreakerError),
    reraise=True,
)
def _deliver(to_email: str, to_name: str, subject: str, html_body: str) -> None:
    email_breaker.call(_send_via_resend, to_email, to_name, subject, html_body)


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_notification_email(
    self,
    to_email: str,
    to_name: str,
    subject: str,
    message: str,
    action_url: Optional[str] = None,
) -> bool:
    """Send one notification email. Returns False when email delivery is not configured."""
    if not settings.RESEND_API_KEY:
        logger.info(f"RESEND_API_KEY not configured; skipping email to {to_email}")
        return False

    html_body = _render_html(to_name, subject, message, action_url)
    try:
        _deliver(to_email, to_name, subject, html_body)
    except CircuitBreakerError:
        logger.warning("Email provider circuit open; deferring delivery")
        raise self.retry(countdown=120)
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        raise self.retry(countdown=60 * (2 ** self.request.retries))
    return True
