"""
AWS SES and SNS client wrappers with error handling.

This module wraps the boto3 SES (email) and SNS (SMS) clients with bounded
retries for throttling and connection errors. Permanent rejections are raised
immediately so the outbox worker can record them.
"""

import time
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    EndpointConnectionError,
)

from freshdrop.core.config import get_settings
from freshdrop.core.logging import get_logger

logger = get_logger(__name__)


class AWSClientError(Exception):
    """Base exception for AWS client errors."""

    def __init__(self, message: str, service: str, **context: Any) -> None:
        """
        Initialize AWS client error.

        Args:
            message: Error message
            service: AWS service name (SES or SNS)
            **context: Additional error context
        """
        super().__init__(message)
        self.service = service
        self.context = context


class SESClientError(AWSClientError):
    """Exception for SES-specific errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, service="SES", **context)


class SNSClientError(AWSClientError):
    """Exception for SNS-specific errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, service="SNS", **context)


def _boto_client(service_name: str):
    settings = get_settings()
    return boto3.client(
        service_name,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        region_name=settings.aws_region,
    )


class _RetryingClient:
    """Shared retry loop for the SES and SNS wrappers."""

    service = ""
    error_class = AWSClientError
    permanent_error_codes: frozenset = frozenset()

    def __init__(self, client: Any = None, max_retries: int = 3, retry_backoff: float = 1.0):
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._client = client or _boto_client(self.service.lower())

    def _call(self, operation: Callable[[], dict], **log_context: Any) -> dict:
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                return operation()
            except ClientError as e:
                error_code = e.response.get("Error", {}).get("Code", "Unknown")
                error_message = e.response.get("Error", {}).get("Message", str(e))

                logger.warning(
                    f"{self.service} client error",
                    attempt=attempt + 1,
                    error_code=error_code,
                    error_message=error_message,
                    **log_context,
                )
                last_exception = e

                if error_code in self.permanent_error_codes:
                    raise self.error_class(
                        f"{self.service} error: {error_message}",
                        error_code=error_code,
                        permanent=True,
                        **log_context,
                    ) from e
            except (EndpointConnectionError, BotoCoreError) as e:
                logger.warning(
                    f"{self.service} connection error",
                    attempt=attempt + 1,
                    error=str(e),
                    **log_context,
                )
                last_exception = e

            if attempt < self.max_retries - 1:
                time.sleep(self.retry_backoff * (2**attempt))

        raise self.error_class(
            f"{self.service} call failed after {self.max_retries} attempts",
            last_error=str(last_exception),
            **log_context,
        ) from last_exception


class SESClient(_RetryingClient):
    """AWS SES client wrapper."""

    service = "SES"
    error_class = SESClientError
    permanent_error_codes = frozenset(
        {"MessageRejected", "MailFromDomainNotVerified", "ConfigurationSetDoesNotExist"}
    )

    def send_email(
        self,
        to_address: str,
        subject: str,
        body_text: str,
        body_html: Optional[str] = None,
        from_address: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Send one email via AWS SES.

        Args:
            to_address: Recipient email address
            subject: Email subject
            body_text: Plain text body
            body_html: HTML body (optional)
            from_address: Sender address (defaults to settings)

        Returns:
            Dictionary with the SES message id

        Raises:
            SESClientError: If sending fails after retries or is rejected
        """
        if not to_address:
            raise SESClientError("Recipient email address is required", permanent=True)

        message: dict[str, Any] = {
            "Subject": {"Data": subject, "Charset": "UTF-8"},
            "Body": {"Text": {"Data": body_text, "Charset": "UTF-8"}},
        }
        if body_html:
            message["Body"]["Html"] = {"Data": body_html, "Charset": "UTF-8"}

        source = from_address or get_settings().ses_from_email

        response = self._call(
            lambda: self._client.send_email(
                Source=source,
                Destination={"ToAddresses": [to_address]},
                Message=message,
            ),
            to_address=to_address,
        )

        logger.info(
            "Email sent via SES",
            message_id=response["MessageId"],
            to_address=to_address,
        )
        return {"message_id": response["MessageId"], "status": "sent"}


class SNSClient(_RetryingClient):
    """AWS SNS client wrapper for direct-to-phone SMS."""

    service = "SNS"
    error_class = SNSClientError
    permanent_error_codes = frozenset(
        {"InvalidParameter", "InvalidParameterValue", "OptedOut"}
    )

    def send_sms(
        self,
        phone_number: str,
        message: str,
        message_type: str = "Transactional",
    ) -> dict[str, Any]:
        """
        Send SMS via AWS SNS.

        Args:
            phone_number: Recipient phone number in E.164 format
            message: SMS message text
            message_type: 'Transactional' or 'Promotional'

        Returns:
            Dictionary with the SNS message id

        Raises:
            SNSClientError: If the number is malformed or sending fails
        """
        if not phone_number.startswith("+"):
            raise SNSClientError(
                "Phone number must be in E.164 format (e.g., +15551234567)",
                phone_number=phone_number,
                permanent=True,
            )

        attributes = {
            "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": message_type}
        }

        response = self._call(
            lambda: self._client.publish(
                PhoneNumber=phone_number,
                Message=message,
                MessageAttributes=attributes,
            ),
            phone_number=phone_number,
        )

        logger.info(
            "SMS sent via SNS",
            message_id=response["MessageId"],
            phone_number=phone_number,
        )
        return {"message_id": response["MessageId"], "status": "sent"}


def get_ses_client(max_retries: int = 3, retry_backoff: float = 1.0) -> SESClient:
    return SESClient(max_retries=max_retries, retry_backoff=retry_backoff)


def get_sns_client(max_retries: int = 3, retry_backoff: float = 1.0) -> SNSClient:
    return SNSClient(max_retries=max_retries, retry_backoff=retry_backoff)
