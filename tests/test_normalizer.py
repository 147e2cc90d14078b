"""Tests for ContentNormalizer."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

import pytest

from echo_ingestor.core.exceptions import NormalizationError, UnknownKitTypeError
from echo_ingestor.core.models import ContentKit, ContentType
from echo_ingestor.core.normalizer import PREVIEW_LENGTH, ContentNormalizer, parse_timestamp


@pytest.fixture
def normalizer() -> ContentNormalizer:
    return ContentNormalizer()


class TestClips:
    def test_maps_clip(
        self, normalizer: ContentNormalizer, make_kit: Callable[..., ContentKit]
    ) -> None:
        raw = {
            "id": "c1",
            "title": "Best moment",
            "suggestedCaption": "Watch this",
            "transcriptText": "transcript",
            "thumbnailUrl": "https://cdn/thumb.jpg",
            "platform": "tiktok",
            "viralityScore": 87,
            "createdAt": "2024-03-02T08:00:00Z",
        }
        kit = make_kit("k1", "videos", [raw])

        item = normalizer.normalize(raw, kit)

        assert item.item_id == "clip-c1"
        assert item.kit_id == "k1"
        assert item.content_type is ContentType.VIDEO
        assert item.title == "Best moment"
        assert item.text == "Watch this"
        assert item.media_url == "https://cdn/thumb.jpg"
        assert item.platform == "tiktok"
        assert item.score == 87.0
        assert item.created_at == datetime(2024, 3, 2, 8, 0, tzinfo=UTC)

    def test_title_and_text_fallbacks(
        self, normalizer: ContentNormalizer, make_kit: Callable[..., ContentKit]
    ) -> None:
        raw = {"id": "c2", "startTime": 12.4, "endTime": 45, "transcriptText": "spoken words"}
        kit = make_kit("k1", "videos", [raw])

        item = normalizer.normalize(raw, kit)

        assert item.title == "Clip 12s - 45s"
        assert item.text == "spoken words"
        assert item.score is None
        assert item.created_at == kit.created_at


class TestWritten:
    def test_maps_post_with_platform_label(
        self, normalizer: ContentNormalizer, make_kit: Callable[..., ContentKit]
    ) -> None:
        raw = {"id": "g1", "platform": "twitter", "content": "x" * 500, "voiceScore": 0.9}
        item = normalizer.normalize(raw, make_kit("k2", "written", [raw]))

        assert item.item_id == "gen-g1"
        assert item.content_type is ContentType.WRITTEN
        assert item.title == "Twitter/X Post"
        assert len(item.text) == PREVIEW_LENGTH
        assert item.media_url is None
        assert item.score == 0.9

    def test_quality_score_fallback(
        self, normalizer: ContentNormalizer, make_kit: Callable[..., ContentKit]
    ) -> None:
        raw = {"id": "g2", "platform": "blog", "content": "post", "qualityScore": 70}
        item = normalizer.normalize(raw, make_kit("k2", "written", [raw]))
        assert item.title == "Blog Post"
        assert item.score == 70.0


class TestCarousels:
    def test_maps_carousel(
        self, normalizer: ContentNormalizer, make_kit: Callable[..., ContentKit]
    ) -> None:
        raw = {
            "id": "s1",
            "slides": [
                {"text": "Slide one", "publicUrl": "https://cdn/1.png"},
                {"text": "Slide two", "publicUrl": "https://cdn/2.png"},
            ],
        }
        item = normalizer.normalize(raw, make_kit("k3", "carousels", [raw]))

        assert item.item_id == "carousel-s1"
        assert item.content_type is ContentType.CAROUSEL
        assert item.title == "Image Carousel"
        assert item.platform == "instagram"
        assert item.text == "Slide one"
        assert item.media_url == "https://cdn/1.png"

    def test_no_slides(
        self, normalizer: ContentNormalizer, make_kit: Callable[..., ContentKit]
    ) -> None:
        raw = {"id": "s2", "platform": "linkedin"}
        item = normalizer.normalize(raw, make_kit("k3", "carousels", [raw]))
        assert item.text == ""
        assert item.media_url is None
        assert item.platform == "linkedin"


class TestRejections:
    def test_unknown_kit_type_fails_loudly(
        self, normalizer: ContentNormalizer, make_kit: Callable[..., ContentKit]
    ) -> None:
        raw = {"id": "p1"}
        with pytest.raises(UnknownKitTypeError, match="podcasts"):
            normalizer.normalize(raw, make_kit("k4", "podcasts", [raw]))

    def test_missing_id(
        self, normalizer: ContentNormalizer, make_kit: Callable[..., ContentKit]
    ) -> None:
        raw = {"content": "no id"}
        with pytest.raises(NormalizationError):
            normalizer.normalize(raw, make_kit("k5", "written", [raw]))


class TestNormalizeKit:
    def test_preserves_order_and_namespaces_ids(
        self, normalizer: ContentNormalizer, make_kit: Callable[..., ContentKit]
    ) -> None:
        kit = make_kit("k6", "written", [{"id": "3"}, {"id": "1"}, {"id": "2"}])
        assert [i.item_id for i in normalizer.normalize_kit(kit)] == ["gen-3", "gen-1", "gen-2"]


class TestParseTimestamp:
    def test_naive_is_utc(self) -> None:
        assert parse_timestamp("2024-01-01T10:00:00") == datetime(2024, 1, 1, 10, tzinfo=UTC)

    @pytest.mark.parametrize("value", [None, "", "not a date", 12345])
    def test_invalid(self, value: object) -> None:
        assert parse_timestamp(value) is None
