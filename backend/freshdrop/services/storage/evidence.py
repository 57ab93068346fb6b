"""
Step evidence photo storage on S3.

Photos are stored under content-addressed keys, so uploading the same image
again (a retried submission, or one that lost a race) writes the same object.
"""

import asyncio
import hashlib
import mimetypes
from typing import Any, Optional
from uuid import UUID

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from freshdrop.core.config import get_settings
from freshdrop.core.logging import get_logger
from freshdrop.services.orders.steps import PhotoUpload

logger = get_logger(__name__)

ALLOWED_CONTENT_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
}


class EvidenceStorageError(Exception):
    """Base exception for evidence storage errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context


class InvalidEvidenceError(EvidenceStorageError):
    """Raised when a photo is rejected before upload."""

    pass


class EvidenceUploadError(EvidenceStorageError):
    """Raised when the object store refuses or fails the upload."""

    pass


def evidence_key(order_id: UUID, step_number: int, photo: PhotoUpload) -> str:
    """Object key ``orders/{order_id}/step-{n}/{sha256}.{ext}``."""
    digest = hashlib.sha256(photo.content).hexdigest()
    extension = ALLOWED_CONTENT_TYPES.get(photo.content_type)
    if extension is None:
        guessed = mimetypes.guess_extension(photo.content_type or "") or ".bin"
        extension = guessed.lstrip(".")
    return f"orders/{order_id}/step-{step_number}/{digest}.{extension}"


class EvidenceStorage:
    """Uploads step photos and returns the reference stored on the order."""

    def __init__(
        self,
        client: Any = None,
        bucket: Optional[str] = None,
        public_base_url: Optional[str] = None,
        max_bytes: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.bucket = bucket or settings.evidence_bucket
        self.public_base_url = (
            public_base_url
            or settings.evidence_public_base_url
            or f"https://{self.bucket}.s3.{settings.aws_region}.amazonaws.com"
        ).rstrip("/")
        self.max_bytes = max_bytes or settings.evidence_max_bytes
        self._client = client or boto3.client(
            "s3",
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
        )

    def validate(self, photo: PhotoUpload) -> None:
        """
        Reject photos the checklist cannot accept.

        Raises:
            InvalidEvidenceError: If the photo is empty, too large or not an image
        """
        if not photo.content:
            raise InvalidEvidenceError("Photo is empty", filename=photo.filename)
        if len(photo.content) > self.max_bytes:
            raise InvalidEvidenceError(
                "Photo exceeds the maximum size",
                size=len(photo.content),
                max_bytes=self.max_bytes,
            )
        if photo.content_type not in ALLOWED_CONTENT_TYPES:
            raise InvalidEvidenceError(
                f"Unsupported photo type {photo.content_type}",
                content_type=photo.content_type,
            )

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def key_for_reference(self, reference: str) -> Optional[str]:
        """Object key behind a public URL, or None for foreign URLs."""
        prefix = f"{self.public_base_url}/"
        reference = reference.strip()
        if not reference.startswith(prefix):
            return None
        return reference[len(prefix):] or None

    async def reference_exists(
        self, order_id: UUID, step_number: int, reference: str
    ) -> bool:
        """
        Whether ``reference`` is a stored photo for this order and step.

        Raises:
            EvidenceUploadError: If S3 cannot be asked
        """
        key = self.key_for_reference(reference)
        if key is None or not key.startswith(f"orders/{order_id}/step-{step_number}/"):
            return False

        try:
            await asyncio.to_thread(self._client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            logger.error(
                "Evidence lookup failed",
                order_id=str(order_id),
                step_number=step_number,
                key=key,
                error=str(e),
            )
            raise EvidenceUploadError(
                "Failed to verify step photo",
                order_id=str(order_id),
                step_number=step_number,
            ) from e
        except BotoCoreError as e:
            raise EvidenceUploadError(
                "Failed to verify step photo",
                order_id=str(order_id),
                step_number=step_number,
            ) from e
        return True

    def _put(self, key: str, photo: PhotoUpload) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=photo.content,
            ContentType=photo.content_type,
        )

    async def store_step_photo(
        self, order_id: UUID, step_number: int, photo: PhotoUpload
    ) -> str:
        """
        Upload a step photo.

        Args:
            order_id: Order the photo belongs to
            step_number: Step the photo proves
            photo: Raw image

        Returns:
            Public URL of the stored object

        Raises:
            InvalidEvidenceError: If the photo fails validation
            EvidenceUploadError: If S3 fails the upload
        """
        self.validate(photo)
        key = evidence_key(order_id, step_number, photo)

        try:
            await asyncio.to_thread(self._put, key, photo)
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "Evidence upload failed",
                order_id=str(order_id),
                step_number=step_number,
                key=key,
                error=str(e),
            )
            raise EvidenceUploadError(
                "Failed to store step photo",
                order_id=str(order_id),
                step_number=step_number,
            ) from e

        logger.info(
            "Evidence stored",
            order_id=str(order_id),
            step_number=step_number,
            key=key,
            size=len(photo.content),
        )
        return self.public_url(key)


def get_evidence_storage() -> EvidenceStorage:
    return EvidenceStorage()
