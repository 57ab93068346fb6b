"""Tests for step evidence photo storage."""

import hashlib
import uuid
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from freshdrop.services.orders.steps import PhotoUpload
from freshdrop.services.storage.evidence import (
    EvidenceStorage,
    EvidenceUploadError,
    InvalidEvidenceError,
    evidence_key,
)

JPEG = b"\xff\xd8\xff\xe0fake-jpeg-body"


@pytest.fixture
def s3_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def storage(s3_client) -> EvidenceStorage:
    return EvidenceStorage(
        client=s3_client,
        bucket="freshdrop-evidence-test",
        public_base_url="https://evidence.test/",
        max_bytes=1024,
    )


class TestEvidenceKey:
    def test_content_addressed(self) -> None:
        order_id = uuid.uuid4()
        photo = PhotoUpload(content=JPEG, content_type="image/jpeg")

        key = evidence_key(order_id, 4, photo)

        digest = hashlib.sha256(JPEG).hexdigest()
        assert key == f"orders/{order_id}/step-4/{digest}.jpg"
        assert evidence_key(order_id, 4, PhotoUpload(JPEG, "image/jpeg", "other.jpg")) == key

    def test_unknown_type_extension(self) -> None:
        key = evidence_key(uuid.uuid4(), 13, PhotoUpload(JPEG, "application/x-unknown"))
        assert key.endswith(".bin")


class TestValidate:
    def test_accepts_supported_images(self, storage) -> None:
        for content_type in ("image/jpeg", "image/png", "image/webp", "image/heic"):
            storage.validate(PhotoUpload(JPEG, content_type))

    def test_empty(self, storage) -> None:
        with pytest.raises(InvalidEvidenceError, match="empty"):
            storage.validate(PhotoUpload(b"", "image/jpeg"))

    def test_too_large(self, storage) -> None:
        with pytest.raises(InvalidEvidenceError) as exc_info:
            storage.validate(PhotoUpload(b"x" * 2048, "image/jpeg"))
        assert exc_info.value.context["max_bytes"] == 1024

    def test_not_an_image(self, storage) -> None:
        with pytest.raises(InvalidEvidenceError, match="Unsupported"):
            storage.validate(PhotoUpload(b"%PDF-1.7", "application/pdf"))


class TestStoreStepPhoto:
    async def test_uploads_and_returns_url(self, storage, s3_client) -> None:
        order_id = uuid.uuid4()
        photo = PhotoUpload(JPEG, "image/jpeg", "bags.jpg")

        url = await storage.store_step_photo(order_id, 4, photo)

        key = evidence_key(order_id, 4, photo)
        assert url == f"https://evidence.test/{key}"
        s3_client.put_object.assert_called_once_with(
            Bucket="freshdrop-evidence-test",
            Key=key,
            Body=JPEG,
            ContentType="image/jpeg",
        )

    async def test_invalid_photo_is_not_uploaded(self, storage, s3_client) -> None:
        with pytest.raises(InvalidEvidenceError):
            await storage.store_step_photo(uuid.uuid4(), 4, PhotoUpload(b"", "image/jpeg"))
        s3_client.put_object.assert_not_called()

    async def test_upload_failure(self, storage, s3_client) -> None:
        s3_client.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}}, "PutObject"
        )
        order_id = uuid.uuid4()

        with pytest.raises(EvidenceUploadError) as exc_info:
            await storage.store_step_photo(order_id, 13, PhotoUpload(JPEG, "image/jpeg"))

        assert exc_info.value.context == {"order_id": str(order_id), "step_number": 13}
        assert isinstance(exc_info.value.__cause__, ClientError)

    def test_default_public_url(self, s3_client) -> None:
        storage = EvidenceStorage(client=s3_client, bucket="photos")
        assert storage.public_url("a/b.jpg").startswith("https://photos.s3.")


class TestReferenceExists:
    async def test_stored_object(self, storage, s3_client) -> None:
        order_id = uuid.uuid4()
        reference = f" https://evidence.test/orders/{order_id}/step-13/abc.jpg "

        assert await storage.reference_exists(order_id, 13, reference) is True
        s3_client.head_object.assert_called_once_with(
            Bucket="freshdrop-evidence-test", Key=f"orders/{order_id}/step-13/abc.jpg"
        )

    @pytest.mark.parametrize(
        "reference",
        [
            "",
            "https://cdn.example/orders/{order}/step-13/abc.jpg",
            "https://evidence.test/orders/{other}/step-13/abc.jpg",
            "https://evidence.test/orders/{order}/step-4/abc.jpg",
        ],
    )
    async def test_foreign_reference(self, storage, s3_client, reference) -> None:
        order_id = uuid.uuid4()
        reference = reference.format(order=order_id, other=uuid.uuid4())

        assert await storage.reference_exists(order_id, 13, reference) is False
        s3_client.head_object.assert_not_called()

    async def test_missing_object(self, storage, s3_client) -> None:
        s3_client.head_object.side_effect = ClientError(
            {"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject"
        )
        order_id = uuid.uuid4()

        reference = f"https://evidence.test/orders/{order_id}/step-4/gone.jpg"
        assert await storage.reference_exists(order_id, 4, reference) is False

    async def test_lookup_failure(self, storage, s3_client) -> None:
        s3_client.head_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}}, "HeadObject"
        )
        order_id = uuid.uuid4()

        with pytest.raises(EvidenceUploadError):
            await storage.reference_exists(
                order_id, 4, f"https://evidence.test/orders/{order_id}/step-4/a.jpg"
            )
