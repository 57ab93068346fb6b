"""
Notification template engine with Jinja2 for email and SMS rendering.

Each notification type has a subject and a message. The message is wrapped
into an HTML email, a plain-text email and a short SMS by shared layout
templates, all loaded from an in-memory loader.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from jinja2 import (
    DictLoader,
    Environment,
    StrictUndefined,
    TemplateError,
    select_autoescape,
)

from freshdrop.core.logging import get_logger
from freshdrop.database.models.notification import NotificationType

logger = get_logger(__name__)


class TemplateEngineError(Exception):
    """Base exception for template engine errors."""

    def __init__(self, message: str, template_name: Optional[str] = None):
        super().__init__(message)
        self.template_name = template_name


class TemplateRenderError(TemplateEngineError):
    """Raised when template rendering fails."""

    pass


DEFAULT_MESSAGES: Dict[NotificationType, Dict[str, str]] = {
    NotificationType.UNCLAIMED: {
        "subject": "Order Confirmed - Looking for Operator",
        "message": "Your order has been confirmed! We're finding the perfect "
        "operator to handle your laundry.",
    },
    NotificationType.CLAIMED: {
        "subject": "Order Claimed - Operator Assigned",
        "message": "Great news! An operator has been assigned to your order "
        "and will contact you soon.",
    },
    NotificationType.PICKED_UP: {
        "subject": "Laundry Picked Up",
        "message": "Your laundry has been picked up and is on its way to our facility!",
    },
    NotificationType.WASHING: {
        "subject": "Laundry Being Washed",
        "message": "Your laundry is currently being washed with care!",
    },
    NotificationType.DRYING: {
        "subject": "Laundry Being Dried",
        "message": "Your laundry has been washed and is now being dried!",
    },
    NotificationType.FOLDED: {
        "subject": "Laundry Folded & Ready",
        "message": "Your laundry has been cleaned, dried, and neatly folded!",
    },
    NotificationType.DELIVERED: {
        "subject": "Order Delivered",
        "message": "Your clean laundry has been delivered! Thank you for "
        "choosing FreshDrop.",
    },
    NotificationType.COMPLETED: {
        "subject": "Order Complete",
        "message": "Hi {{ customer_name }}, your FreshDrop order is complete. "
        "We hope you enjoy your fresh laundry!",
    },
    NotificationType.CANCELLED: {
        "subject": "Order Cancelled",
        "message": "Your order has been cancelled. If you have any questions, "
        "please contact support.",
    },
}

_LAYOUTS = {
    "email.html": (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">\n'
        '<h1 style="color: #2563eb;">FreshDrop Laundry</h1>\n'
        "<h2>Order Update - {{ subject }}</h2>\n"
        "<p>Hi {{ customer_name }},</p>\n"
        "<p>{{ message }}</p>\n"
        '<div style="background: #f3f4f6; padding: 20px; border-radius: 8px;">\n'
        "<strong>Order Details:</strong><br>\n"
        "Order: {{ order_number }}<br>\n"
        "Status: {{ status | status_label }}\n"
        "{% if current_step %}<br>Step: {{ current_step }}{% endif %}\n"
        "</div>\n"
        "<p>Thank you for choosing FreshDrop!</p>\n"
        "</div>\n"
    ),
    "email.txt": (
        "Hi {{ customer_name }},\n\n"
        "{{ message }}\n\n"
        "Order: {{ order_number }}\n"
        "Status: {{ status | status_label }}\n"
    ),
    "sms.txt": "FreshDrop: {{ subject }}. {{ message }} Order: {{ order_number }}",
}


@dataclass(frozen=True)
class RenderedNotification:
    subject: str
    text_body: str
    html_body: str
    sms_body: str


def _status_label(value: str) -> str:
    return str(value).replace("_", " ").upper()


class TemplateEngine:
    """
    Template engine for rendering customer notifications.

    Messages may reference ``customer_name``, ``order_number``, ``status``
    and ``current_step``.
    """

    def __init__(self, messages: Optional[Dict[NotificationType, Dict[str, str]]] = None):
        self.messages = {**DEFAULT_MESSAGES, **(messages or {})}

        templates = dict(_LAYOUTS)
        for notification_type, entry in self.messages.items():
            templates[f"{notification_type.value}.subject"] = entry["subject"]
            templates[f"{notification_type.value}.message"] = entry["message"]

        self.env = Environment(
            loader=DictLoader(templates),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["status_label"] = _status_label

    def render(
        self, notification_type: NotificationType, context: Dict[str, Any]
    ) -> RenderedNotification:
        """
        Render every channel body for a notification.

        Args:
            notification_type: Status being announced
            context: Template variables

        Returns:
            Rendered subject and bodies

        Raises:
            TemplateRenderError: If a template fails to render
        """
        name = notification_type.value
        context = {"current_step": None, **context}

        try:
            subject = self.env.get_template(f"{name}.subject").render(**context)
            message = self.env.get_template(f"{name}.message").render(**context)
            layout_context = {**context, "subject": subject, "message": message}

            return RenderedNotification(
                subject=subject,
                text_body=self.env.get_template("email.txt").render(**layout_context),
                html_body=self.env.get_template("email.html").render(**layout_context),
                sms_body=self.env.get_template("sms.txt").render(**layout_context),
            )
        except TemplateError as e:
            logger.error(
                "Notification template rendering failed",
                notification_type=name,
                error=str(e),
            )
            raise TemplateRenderError(
                f"Failed to render {name} notification: {e}",
                template_name=name,
            ) from e


def get_template_engine() -> TemplateEngine:
    return TemplateEngine()
