"""
Test suite for the AWS SES and SNS client wrappers.

Covers message construction, bounded retries for throttling and connection
errors, and immediate failure on permanent rejections.
"""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from freshdrop.services.notifications.aws_clients import (
    AWSClientError,
    SESClient,
    SESClientError,
    SNSClient,
    SNSClientError,
    get_ses_client,
)


# ============================================================================
# Test Fixtures
# ============================================================================


def client_error(code: str, message: str = "boom", operation: str = "SendEmail") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


@pytest.fixture
def boto_client() -> MagicMock:
    client = MagicMock()
    client.send_email.return_value = {"MessageId": "ses-123"}
    client.publish.return_value = {"MessageId": "sns-456"}
    return client


@pytest.fixture
def ses_client(boto_client) -> SESClient:
    return SESClient(client=boto_client, max_retries=3, retry_backoff=0)


@pytest.fixture
def sns_client(boto_client) -> SNSClient:
    return SNSClient(client=boto_client, max_retries=3, retry_backoff=0)


# ============================================================================
# Error types
# ============================================================================


class TestErrors:
    def test_service_names(self) -> None:
        assert SESClientError("x").service == "SES"
        assert SNSClientError("x").service == "SNS"
        assert isinstance(SESClientError("x"), AWSClientError)

    def test_context(self) -> None:
        error = SNSClientError("bad number", permanent=True, phone_number="555")
        assert error.context == {"permanent": True, "phone_number": "555"}


# ============================================================================
# SES
# ============================================================================


class TestSESClient:
    def test_send_email(self, ses_client, boto_client) -> None:
        result = ses_client.send_email(
            to_address="jordan@example.com",
            subject="Laundry Picked Up",
            body_text="Your laundry has been picked up",
            body_html="<p>Your laundry has been picked up</p>",
            from_address="orders@freshdrop.test",
        )

        assert result == {"message_id": "ses-123", "status": "sent"}
        kwargs = boto_client.send_email.call_args.kwargs
        assert kwargs["Source"] == "orders@freshdrop.test"
        assert kwargs["Destination"] == {"ToAddresses": ["jordan@example.com"]}
        assert kwargs["Message"]["Subject"]["Data"] == "Laundry Picked Up"
        assert "Html" in kwargs["Message"]["Body"]

    def test_default_sender(self, ses_client, boto_client) -> None:
        ses_client.send_email("jordan@example.com", "Subject", "Body")
        kwargs = boto_client.send_email.call_args.kwargs
        assert kwargs["Source"] == "FreshDrop <orders@freshdrop.app>"
        assert "Html" not in kwargs["Message"]["Body"]

    def test_recipient_required(self, ses_client, boto_client) -> None:
        with pytest.raises(SESClientError) as exc_info:
            ses_client.send_email("", "Subject", "Body")
        assert exc_info.value.context["permanent"] is True
        boto_client.send_email.assert_not_called()

    def test_retries_throttling(self, ses_client, boto_client) -> None:
        boto_client.send_email.side_effect = [
            client_error("Throttling"),
            {"MessageId": "ses-retry"},
        ]

        result = ses_client.send_email("jordan@example.com", "Subject", "Body")

        assert result["message_id"] == "ses-retry"
        assert boto_client.send_email.call_count == 2

    def test_gives_up_after_retries(self, ses_client, boto_client) -> None:
        boto_client.send_email.side_effect = EndpointConnectionError(
            endpoint_url="https://email.us-east-1.amazonaws.com"
        )

        with pytest.raises(SESClientError, match="after 3 attempts") as exc_info:
            ses_client.send_email("jordan@example.com", "Subject", "Body")

        assert boto_client.send_email.call_count == 3
        assert "permanent" not in exc_info.value.context

    def test_rejection_is_permanent(self, ses_client, boto_client) -> None:
        boto_client.send_email.side_effect = client_error("MessageRejected", "Email address is not verified")

        with pytest.raises(SESClientError) as exc_info:
            ses_client.send_email("jordan@example.com", "Subject", "Body")

        assert boto_client.send_email.call_count == 1
        assert exc_info.value.context["permanent"] is True
        assert exc_info.value.context["error_code"] == "MessageRejected"

    def test_backoff_between_attempts(self, boto_client) -> None:
        client = SESClient(client=boto_client, max_retries=3, retry_backoff=0.5)
        boto_client.send_email.side_effect = client_error("Throttling")

        with patch("freshdrop.services.notifications.aws_clients.time.sleep") as sleep:
            with pytest.raises(SESClientError):
                client.send_email("jordan@example.com", "Subject", "Body")

        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

    def test_factory_builds_boto_client(self) -> None:
        with patch("freshdrop.services.notifications.aws_clients.boto3.client") as factory:
            get_ses_client()
        assert factory.call_args.args == ("ses",)


# ============================================================================
# SNS
# ============================================================================


class TestSNSClient:
    def test_send_sms(self, sns_client, boto_client) -> None:
        result = sns_client.send_sms("+15551234567", "FreshDrop: Laundry Picked Up")

        assert result == {"message_id": "sns-456", "status": "sent"}
        kwargs = boto_client.publish.call_args.kwargs
        assert kwargs["PhoneNumber"] == "+15551234567"
        assert kwargs["MessageAttributes"]["AWS.SNS.SMS.SMSType"]["StringValue"] == (
            "Transactional"
        )

    def test_requires_e164(self, sns_client, boto_client) -> None:
        with pytest.raises(SNSClientError, match="E.164"):
            sns_client.send_sms("5551234567", "hello")
        boto_client.publish.assert_not_called()

    def test_opted_out_is_permanent(self, sns_client, boto_client) -> None:
        boto_client.publish.side_effect = client_error("OptedOut", operation="Publish")

        with pytest.raises(SNSClientError) as exc_info:
            sns_client.send_sms("+15551234567", "hello")

        assert exc_info.value.context["permanent"] is True
        assert boto_client.publish.call_count == 1

    def test_internal_error_retried(self, sns_client, boto_client) -> None:
        boto_client.publish.side_effect = [
            client_error("InternalError", operation="Publish"),
            client_error("InternalError", operation="Publish"),
            {"MessageId": "sns-third"},
        ]
        assert sns_client.send_sms("+15551234567", "hello")["message_id"] == "sns-third"
