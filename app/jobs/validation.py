"""Synchronous submission checks, run before any job record is created."""

from typing import List

from app.exceptions import SubmissionValidationError
from app.jobs.models import ImageRef, MediaKind
from app.storage.media_store import MediaStore


def validate_media_submission(
    media_store: MediaStore,
    media_reference: str,
    original_filename: str,
    content_type: str,
    media_kind: MediaKind,
) -> None:
    if not media_reference or not original_filename or not content_type:
        raise SubmissionValidationError("Missing media URL, original filename, or content type.")

    expected_prefix = f"{media_kind.value}/"
    if not content_type.startswith(expected_prefix):
        raise SubmissionValidationError(
            f"Invalid content type: {content_type}. Expected {expected_prefix}* for {media_kind.value} analysis."
        )

    if not media_store.is_public_url(media_reference):
        raise SubmissionValidationError("Invalid media URL format.")


def validate_image_set(media_store: MediaStore, images: List[ImageRef], max_images: int) -> None:
    if not images:
        raise SubmissionValidationError("Missing images array or empty images.")

    if len(images) > max_images:
        raise SubmissionValidationError(f"Maximum {max_images} images allowed.")

    for image in images:
        if not image.url or not image.filename or not image.content_type:
            raise SubmissionValidationError("Each image must have url, filename, and content_type.")
        if not image.content_type.startswith("image/"):
            raise SubmissionValidationError(
                f"Invalid content type: {image.content_type}. Only images are allowed."
            )

    for image in images:
        if not media_store.is_public_url(image.url):
            raise SubmissionValidationError(f"Invalid image URL format: {image.url}")
