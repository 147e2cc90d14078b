"""Map heterogeneous content kit items onto NormalizedContentItem."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from echo_ingestor.core.exceptions import NormalizationError, UnknownKitTypeError
from echo_ingestor.core.models import (
    ContentKit,
    ContentType,
    KitType,
    NormalizedContentItem,
)

logger = logging.getLogger(__name__)

PLATFORM_LABELS: dict[str, str] = {
    "linkedin": "LinkedIn",
    "twitter": "Twitter/X",
    "instagram": "Instagram",
    "tiktok": "TikTok",
    "youtube": "YouTube",
    "blog": "Blog",
    "email": "Newsletter",
    "video-script": "Video Script",
}

PREVIEW_LENGTH = 200


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from the API. Naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class ContentNormalizer:
    """Project raw kit items of every known kit type into one display shape.

    Unknown kit types raise UnknownKitTypeError instead of being dropped, so
    library counts are never silently short.
    """

    def __init__(self) -> None:
        self._mappers: dict[
            KitType, Callable[[dict[str, Any], ContentKit], NormalizedContentItem]
        ] = {
            KitType.VIDEOS: self._normalize_clip,
            KitType.WRITTEN: self._normalize_written,
            KitType.CAROUSELS: self._normalize_carousel,
        }

    def normalize(self, raw_item: dict[str, Any], kit: ContentKit) -> NormalizedContentItem:
        """Normalize one raw item belonging to `kit`.

        Raises:
            UnknownKitTypeError: If the kit type has no mapping.
            NormalizationError: If the item lacks an id.
        """
        try:
            kit_type = KitType(kit.kit_type)
        except ValueError as e:
            raise UnknownKitTypeError(
                f"Unknown kit type {kit.kit_type!r} for kit {kit.kit_id}"
            ) from e

        if not raw_item.get("id"):
            raise NormalizationError(f"Item without id in kit {kit.kit_id}")

        return self._mappers[kit_type](raw_item, kit)

    def normalize_kit(self, kit: ContentKit) -> list[NormalizedContentItem]:
        """Normalize every member of a kit, preserving server order."""
        return [self.normalize(raw_item, kit) for raw_item in kit.items]

    # -- per-type mappings -------------------------------------------------

    def _normalize_clip(self, raw: dict[str, Any], kit: ContentKit) -> NormalizedContentItem:
        title = raw.get("title") or (
            f"Clip {float(raw.get('startTime') or 0):.0f}s - {float(raw.get('endTime') or 0):.0f}s"
        )
        text = raw.get("suggestedCaption") or raw.get("transcriptText") or ""
        return NormalizedContentItem(
            item_id=f"clip-{raw['id']}",
            kit_id=kit.kit_id,
            content_type=ContentType.VIDEO,
            platform=raw.get("platform"),
            title=title,
            text=text[:PREVIEW_LENGTH],
            media_url=raw.get("thumbnailUrl"),
            created_at=self._created_at(raw, kit),
            score=_first_score(raw, "viralityScore", "qualityScore"),
        )

    def _normalize_written(self, raw: dict[str, Any], kit: ContentKit) -> NormalizedContentItem:
        platform = raw.get("platform")
        label = PLATFORM_LABELS.get(platform, platform) if platform else "Written"
        return NormalizedContentItem(
            item_id=f"gen-{raw['id']}",
            kit_id=kit.kit_id,
            content_type=ContentType.WRITTEN,
            platform=platform,
            title=f"{label} Post",
            text=(raw.get("content") or "")[:PREVIEW_LENGTH],
            media_url=None,
            created_at=self._created_at(raw, kit),
            score=_first_score(raw, "voiceScore", "qualityScore"),
        )

    def _normalize_carousel(self, raw: dict[str, Any], kit: ContentKit) -> NormalizedContentItem:
        slides = raw.get("slides") or []
        first_slide = slides[0] if slides else {}
        return NormalizedContentItem(
            item_id=f"carousel-{raw['id']}",
            kit_id=kit.kit_id,
            content_type=ContentType.CAROUSEL,
            platform=raw.get("platform", "instagram"),
            title="Image Carousel",
            text=(first_slide.get("text") or "")[:PREVIEW_LENGTH],
            media_url=first_slide.get("publicUrl"),
            created_at=self._created_at(raw, kit),
            score=_first_score(raw, "qualityScore"),
        )

    @staticmethod
    def _created_at(raw: dict[str, Any], kit: ContentKit) -> datetime:
        return (
            parse_timestamp(raw.get("createdAt"))
            or parse_timestamp(kit.created_at)
            or kit.created_at
        )


def _first_score(raw: dict[str, Any], *keys: str) -> float | None:
    """Return the first truthy numeric score among `keys`."""
    for key in keys:
        value = raw.get(key)
        if value:
            return float(value)
    return None
