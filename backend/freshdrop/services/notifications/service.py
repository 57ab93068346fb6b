"""
Notification service delivering outbox events over email and SMS.

This module provides the NotificationService class that resolves the
customer's contact profile, renders the event with the template engine and
sends it over every enabled channel, recording one delivery log row per
channel attempt.
"""

import asyncio
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from freshdrop.core.logging import get_logger
from freshdrop.database.models.notification import (
    DeliveryStatus,
    NotificationChannel,
    NotificationLog,
    NotificationOutbox,
)
from freshdrop.database.models.profile import CustomerProfile
from freshdrop.services.notifications.aws_clients import (
    AWSClientError,
    SESClient,
    SNSClient,
    get_ses_client,
    get_sns_client,
)
from freshdrop.services.notifications.templates import (
    RenderedNotification,
    TemplateEngine,
    TemplateEngineError,
    get_template_engine,
)

logger = get_logger(__name__)


class NotificationServiceError(Exception):
    """Base exception for notification service errors."""

    def __init__(self, message: str, permanent: bool = False, **context: Any) -> None:
        """
        Initialize notification service error.

        Args:
            message: Error message
            permanent: Whether retrying could ever succeed
            **context: Additional error context
        """
        super().__init__(message)
        self.permanent = permanent
        self.context = context


class NotificationDeliveryError(NotificationServiceError):
    """Exception for notification delivery failures."""

    pass


class NotificationValidationError(NotificationServiceError):
    """Exception for events that can never be delivered as they stand."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, permanent=True, **context)


class NotificationService:
    """
    Delivers one outbox event across the customer's enabled channels.

    The event counts as delivered when at least one channel succeeds. Log
    rows are added to the session; the caller owns the transaction.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        ses_client: Optional[SESClient] = None,
        sns_client: Optional[SNSClient] = None,
        template_engine: Optional[TemplateEngine] = None,
    ) -> None:
        self.db = db_session
        self._ses_client = ses_client
        self._sns_client = sns_client
        self.template_engine = template_engine or get_template_engine()

    @property
    def ses_client(self) -> SESClient:
        if self._ses_client is None:
            self._ses_client = get_ses_client()
        return self._ses_client

    @property
    def sns_client(self) -> SNSClient:
        if self._sns_client is None:
            self._sns_client = get_sns_client()
        return self._sns_client

    async def dispatch(self, event: NotificationOutbox) -> dict[str, Any]:
        """
        Deliver an outbox event.

        Args:
            event: Pending outbox row

        Returns:
            Per-channel delivery results

        Raises:
            NotificationValidationError: If the customer cannot be reached
            NotificationDeliveryError: If every channel failed
        """
        profile = await self._get_profile(event.customer_id)
        if profile is None:
            raise NotificationValidationError(
                "Customer profile not found",
                customer_id=str(event.customer_id),
                order_id=str(event.order_id),
            )

        channels = self._enabled_channels(profile)
        if not channels:
            raise NotificationValidationError(
                "Customer has no reachable notification channel",
                customer_id=str(event.customer_id),
                order_id=str(event.order_id),
            )

        try:
            rendered = self.template_engine.render(
                event.notification_type,
                {
                    "customer_name": profile.display_name,
                    "order_number": event.order_number,
                    "status": event.notification_type.value,
                    "current_step": event.current_step,
                },
            )
        except TemplateEngineError as e:
            raise NotificationValidationError(
                f"Failed to render notification: {e}",
                order_id=str(event.order_id),
            ) from e

        results: dict[str, Any] = {}
        errors: list[AWSClientError] = []
        for channel in channels:
            try:
                results[channel.value] = await self._send(channel, profile, rendered, event)
            except AWSClientError as e:
                errors.append(e)
                results[channel.value] = {"status": "failed", "error": str(e)}

        if len(errors) == len(channels):
            raise NotificationDeliveryError(
                "Notification failed on every channel",
                permanent=all(e.context.get("permanent") for e in errors),
                order_id=str(event.order_id),
                errors=[str(e) for e in errors],
            )

        logger.info(
            "Notification delivered",
            order_id=str(event.order_id),
            notification_type=event.notification_type.value,
            channels=list(results),
        )
        return {
            "status": "sent",
            "order_id": str(event.order_id),
            "notification_type": event.notification_type.value,
            "channels": results,
        }

    async def _send(
        self,
        channel: NotificationChannel,
        profile: CustomerProfile,
        rendered: RenderedNotification,
        event: NotificationOutbox,
    ) -> dict[str, Any]:
        if channel == NotificationChannel.EMAIL:
            recipient, content = profile.email, rendered.text_body
            call = partial(
                self.ses_client.send_email,
                to_address=profile.email,
                subject=rendered.subject,
                body_text=rendered.text_body,
                body_html=rendered.html_body,
            )
        else:
            recipient, content = profile.phone, rendered.sms_body
            call = partial(
                self.sns_client.send_sms,
                phone_number=profile.phone,
                message=rendered.sms_body,
            )

        log = NotificationLog(
            outbox_id=event.id,
            order_id=event.order_id,
            customer_id=event.customer_id,
            notification_type=event.notification_type,
            channel=channel,
            recipient=recipient,
            message_content=content,
        )
        self.db.add(log)

        try:
            result = await asyncio.to_thread(call)
        except AWSClientError as e:
            log.status = DeliveryStatus.FAILED
            log.error_message = str(e)
            logger.error(
                "Notification channel failed",
                channel=channel.value,
                order_id=str(event.order_id),
                error=str(e),
            )
            raise

        log.status = DeliveryStatus.SENT
        log.provider_message_id = result.get("message_id")
        log.sent_at = datetime.now(timezone.utc)
        return {"status": "sent", "message_id": result.get("message_id")}

    async def _get_profile(self, customer_id: UUID) -> Optional[CustomerProfile]:
        result = await self.db.execute(
            select(CustomerProfile).where(CustomerProfile.user_id == customer_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _enabled_channels(profile: CustomerProfile) -> list[NotificationChannel]:
        channels = []
        if profile.email and profile.email_notifications:
            channels.append(NotificationChannel.EMAIL)
        if profile.phone and profile.sms_notifications:
            channels.append(NotificationChannel.SMS)
        return channels


def get_notification_service(db_session: AsyncSession) -> NotificationService:
    return NotificationService(db_session)
