"""Tests for ContentLibraryAggregator with a fake kit fetcher."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

from echo_ingestor.core.exceptions import AggregationFetchError, ApiError
from echo_ingestor.core.models import (
    ContentKit,
    ContentType,
    FeedbackVerdict,
    GroupBy,
    KitPage,
    LibraryFilter,
    SortKey,
)
from echo_ingestor.pipeline.library import ContentLibraryAggregator

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)  # a Friday


def _post(
    item_id: str,
    created_at: str,
    platform: str | None = "linkedin",
    score: float | None = None,
    content: str = "",
) -> dict[str, Any]:
    raw: dict[str, Any] = {"id": item_id, "createdAt": created_at, "content": content}
    if platform:
        raw["platform"] = platform
    if score is not None:
        raw["voiceScore"] = score
    return raw


def _kit(kit_id: str, kit_type: str, items: list[dict[str, Any]]) -> ContentKit:
    return ContentKit(kit_id=kit_id, kit_type=kit_type, created_at=NOW, items=tuple(items))


class FakeFetcher:
    """Serves KitPages by (cursor, content type); can hold the first call or fail."""

    def __init__(self, pages: dict[tuple[str | None, ContentType | None], KitPage]) -> None:
        self.pages = pages
        self.calls: list[tuple[str | None, ContentType | None]] = []
        self.errors: list[Exception] = []
        self.hold_first: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0
        self.cancelled = 0

    async def fetch_kits(
        self, cursor: str | None = None, library_filter: LibraryFilter | None = None
    ) -> KitPage:
        content_type = library_filter.content_type if library_filter else None
        self.calls.append((cursor, content_type))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.hold_first is not None and len(self.calls) == 1:
                await self.hold_first.wait()
            if self.errors:
                raise self.errors.pop(0)
            return self.pages[(cursor, content_type)]
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.active -= 1


PAGE_ONE = KitPage(
    kits=(
        _kit(
            "k1",
            "written",
            [
                _post("1", "2024-03-15T09:00:00Z", "linkedin", 0.4, "launch recap"),
                _post("2", "2024-03-14T10:00:00Z", "twitter", 0.9),
            ],
        ),
    ),
    next_cursor="c2",
    total_hint=5,
)

PAGE_TWO = KitPage(
    kits=(
        _kit(
            "k2",
            "written",
            [
                _post("3", "2024-03-12T10:00:00Z", None),
                _post("4", "2024-03-02T10:00:00Z", "linkedin", 0.7),
            ],
        ),
        _kit("k3", "carousels", [{"id": "5", "createdAt": "2024-02-20T10:00:00Z"}]),
    ),
    next_cursor=None,
    total_hint=5,
)

VIDEO_PAGE = KitPage(
    kits=(
        _kit(
            "k9",
            "videos",
            [{"id": "v1", "title": "Clip", "createdAt": "2024-03-15T08:00:00Z"}],
        ),
    ),
    next_cursor=None,
    total_hint=1,
)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher(
        {
            (None, None): PAGE_ONE,
            ("c2", None): PAGE_TWO,
            (None, ContentType.VIDEO): VIDEO_PAGE,
        }
    )


@pytest.fixture
def library(fetcher: FakeFetcher) -> ContentLibraryAggregator:
    return ContentLibraryAggregator(fetcher, clock=lambda: NOW)


async def _load_all(library: ContentLibraryAggregator) -> None:
    while await library.load_more():
        pass


def _ids(items: Any) -> list[str]:
    return [item.item_id for item in items]


# ---------- paging ----------


class TestLoadMore:
    @pytest.mark.asyncio
    async def test_pages_concatenate_in_server_order(
        self, library: ContentLibraryAggregator, fetcher: FakeFetcher
    ) -> None:
        """Loading page 1 then page 2 equals loading both at once."""
        await _load_all(library)

        single = FakeFetcher(
            {(None, None): KitPage(kits=PAGE_ONE.kits + PAGE_TWO.kits, next_cursor=None)}
        )
        combined = ContentLibraryAggregator(single, clock=lambda: NOW)
        await combined.load_more()

        assert _ids(library.collection) == _ids(combined.collection)
        assert _ids(library.collection) == ["gen-1", "gen-2", "gen-3", "gen-4", "carousel-5"]
        assert fetcher.calls == [(None, None), ("c2", None)]
        assert library.has_more is False
        assert library.total_hint == 5

    @pytest.mark.asyncio
    async def test_exhausted_collection_does_not_fetch(
        self, library: ContentLibraryAggregator, fetcher: FakeFetcher
    ) -> None:
        await _load_all(library)
        assert await library.load_more() is False
        assert len(fetcher.calls) == 2

    @pytest.mark.asyncio
    async def test_duplicate_trigger_fetches_once(
        self, library: ContentLibraryAggregator, fetcher: FakeFetcher
    ) -> None:
        fetcher.hold_first = asyncio.Event()

        first = asyncio.create_task(library.load_more())
        await asyncio.sleep(0)
        assert library.loading is True

        assert await library.load_more() is False

        fetcher.hold_first.set()
        assert await first is True
        assert fetcher.calls == [(None, None)]
        assert library.loading is False

    @pytest.mark.asyncio
    async def test_duplicate_ids_across_pages_keep_first(self) -> None:
        fetcher = FakeFetcher(
            {
                (None, None): KitPage(
                    kits=(_kit("k1", "written", [_post("1", "2024-03-15T09:00:00Z")]),),
                    next_cursor="c2",
                ),
                ("c2", None): KitPage(
                    kits=(
                        _kit(
                            "k2",
                            "written",
                            [
                                _post("1", "2024-01-01T09:00:00Z"),
                                _post("2", "2024-03-15T09:00:00Z"),
                            ],
                        ),
                    ),
                ),
            }
        )
        library = ContentLibraryAggregator(fetcher, clock=lambda: NOW)
        await _load_all(library)

        assert _ids(library.collection) == ["gen-1", "gen-2"]
        assert library.collection[0].kit_id == "k1"

    @pytest.mark.asyncio
    async def test_fetch_error_keeps_loaded_pages(
        self, library: ContentLibraryAggregator, fetcher: FakeFetcher
    ) -> None:
        await library.load_more()
        fetcher.errors.append(ApiError("Failed to fetch kits: 503"))

        assert await library.load_more() is False

        assert isinstance(library.error, AggregationFetchError)
        assert "503" in str(library.error)
        assert _ids(library.collection) == ["gen-1", "gen-2"]
        assert library.has_more is True
        assert library.loading is False

        library.dismiss_error()
        assert library.error is None
        assert await library.load_more() is True
        assert len(library.collection) == 5

    @pytest.mark.asyncio
    async def test_unknown_kit_type_surfaces_as_error(self) -> None:
        fetcher = FakeFetcher(
            {(None, None): KitPage(kits=(_kit("k1", "podcasts", [{"id": "p1"}]),))}
        )
        library = ContentLibraryAggregator(fetcher, clock=lambda: NOW)

        assert await library.load_more() is False
        assert library.error is not None
        assert "podcasts" in str(library.error)
        assert library.collection == ()

    @pytest.mark.asyncio
    async def test_refresh_reloads_first_page(
        self, library: ContentLibraryAggregator, fetcher: FakeFetcher
    ) -> None:
        await _load_all(library)
        assert await library.refresh() is True
        assert _ids(library.collection) == ["gen-1", "gen-2"]
        assert library.has_more is True
        assert fetcher.calls[-1] == (None, None)


# ---------- filter / sort ----------


class TestViewConfiguration:
    @pytest.mark.asyncio
    async def test_sort_changes_order_not_membership(
        self, library: ContentLibraryAggregator
    ) -> None:
        await _load_all(library)

        views = {}
        for key in SortKey:
            library.set_sort(key)
            views[key] = _ids(library.items)

        membership = {frozenset(ids) for ids in views.values()}
        assert len(membership) == 1
        assert views[SortKey.RECENT] == ["gen-1", "gen-2", "gen-3", "gen-4", "carousel-5"]
        assert views[SortKey.OLDEST] == list(reversed(views[SortKey.RECENT]))
        # Missing scores sort as zero; ties keep collection order.
        assert views[SortKey.SCORE] == ["gen-2", "gen-4", "gen-1", "gen-3", "carousel-5"]

    @pytest.mark.asyncio
    async def test_platform_and_search_are_local(
        self, library: ContentLibraryAggregator, fetcher: FakeFetcher
    ) -> None:
        await _load_all(library)
        calls = len(fetcher.calls)

        await library.set_filter(LibraryFilter(platform="linkedin"))
        assert _ids(library.items) == ["gen-1", "gen-4"]

        await library.set_filter(LibraryFilter(platform="linkedin", search="LAUNCH"))
        assert _ids(library.items) == ["gen-1"]

        await library.set_filter(LibraryFilter(search="twitter"))
        assert _ids(library.items) == ["gen-2"]

        assert len(fetcher.calls) == calls
        assert len(library.collection) == 5

    @pytest.mark.asyncio
    async def test_content_type_change_resets_and_refetches(
        self, library: ContentLibraryAggregator, fetcher: FakeFetcher
    ) -> None:
        await _load_all(library)

        await library.set_filter(LibraryFilter(content_type=ContentType.VIDEO))

        assert fetcher.calls[-1] == (None, ContentType.VIDEO)
        assert _ids(library.collection) == ["clip-v1"]
        assert library.has_more is False
        assert library.total_hint == 1

    @pytest.mark.asyncio
    async def test_stale_page_discarded_after_filter_change(
        self, library: ContentLibraryAggregator, fetcher: FakeFetcher
    ) -> None:
        fetcher.hold_first = asyncio.Event()
        stale = asyncio.create_task(library.load_more())
        while not fetcher.calls:
            await asyncio.sleep(0)

        await library.set_filter(LibraryFilter(content_type=ContentType.VIDEO))
        fetcher.hold_first.set()

        assert await stale is False
        assert _ids(library.collection) == ["clip-v1"]

    @pytest.mark.asyncio
    async def test_filter_change_cancels_in_flight_fetch(
        self, library: ContentLibraryAggregator, fetcher: FakeFetcher
    ) -> None:
        """The superseded request is cancelled before the new one starts."""
        fetcher.hold_first = asyncio.Event()
        stale = asyncio.create_task(library.load_more())
        while not fetcher.calls:
            await asyncio.sleep(0)

        await library.set_filter(LibraryFilter(content_type=ContentType.VIDEO))

        assert await stale is False
        assert fetcher.calls == [(None, None), (None, ContentType.VIDEO)]
        assert fetcher.cancelled == 1
        assert fetcher.max_active == 1
        assert library.loading is False
        assert library.error is None

    @pytest.mark.asyncio
    async def test_refresh_cancels_in_flight_fetch(
        self, library: ContentLibraryAggregator, fetcher: FakeFetcher
    ) -> None:
        fetcher.hold_first = asyncio.Event()
        stale = asyncio.create_task(library.load_more())
        while not fetcher.calls:
            await asyncio.sleep(0)

        assert await library.refresh() is True

        assert await stale is False
        assert fetcher.max_active == 1
        assert _ids(library.collection) == ["gen-1", "gen-2"]


# ---------- grouping ----------


class TestGroups:
    @pytest.mark.asyncio
    async def test_no_grouping(self, library: ContentLibraryAggregator) -> None:
        await _load_all(library)
        [group] = library.groups
        assert (group.key, group.title) == ("all", "All Content")
        assert _ids(group.items) == _ids(library.items)

    @pytest.mark.asyncio
    async def test_date_buckets_in_fixed_order(self, library: ContentLibraryAggregator) -> None:
        await _load_all(library)
        library.set_group_by(GroupBy.DATE)

        for sort_key in (SortKey.RECENT, SortKey.OLDEST):
            library.set_sort(sort_key)
            groups = library.groups
            assert [g.key for g in groups] == [
                "today",
                "yesterday",
                "this-week",
                "this-month",
                "older",
            ]
            assert [_ids(g.items) for g in groups] == [
                ["gen-1"],
                ["gen-2"],
                ["gen-3"],
                ["gen-4"],
                ["carousel-5"],
            ]

    @pytest.mark.asyncio
    async def test_items_within_bucket_follow_sort(self) -> None:
        fetcher = FakeFetcher(
            {
                (None, None): KitPage(
                    kits=(
                        _kit(
                            "k1",
                            "written",
                            [
                                _post("a", "2024-03-15T08:00:00Z"),
                                _post("b", "2024-03-15T11:00:00Z"),
                            ],
                        ),
                    )
                )
            }
        )
        library = ContentLibraryAggregator(fetcher, clock=lambda: NOW)
        await library.load_more()
        library.set_group_by(GroupBy.DATE)

        library.set_sort(SortKey.RECENT)
        assert _ids(library.groups[0].items) == ["gen-b", "gen-a"]
        library.set_sort(SortKey.OLDEST)
        assert _ids(library.groups[0].items) == ["gen-a", "gen-b"]

    @pytest.mark.asyncio
    async def test_platform_buckets(self, library: ContentLibraryAggregator) -> None:
        await _load_all(library)
        library.set_group_by(GroupBy.PLATFORM)

        groups = library.groups

        assert [(g.key, g.title) for g in groups] == [
            ("linkedin", "LinkedIn"),
            ("twitter", "Twitter/X"),
            ("instagram", "Instagram"),
            ("none", "No Platform"),
        ]
        assert _ids(groups[0].items) == ["gen-1", "gen-4"]
        assert _ids(groups[-1].items) == ["gen-3"]

    @pytest.mark.asyncio
    async def test_type_buckets(self, library: ContentLibraryAggregator) -> None:
        await _load_all(library)
        library.set_group_by(GroupBy.TYPE)
        assert [g.key for g in library.groups] == ["written", "carousel"]


# ---------- selection ----------


class TestSelection:
    @pytest.mark.asyncio
    async def test_toggle(self, library: ContentLibraryAggregator) -> None:
        await library.load_more()

        assert library.toggle_selection("gen-1") is True
        assert library.selected_ids == {"gen-1"}
        assert library.toggle_selection("gen-1") is False
        assert library.selected_ids == set()

    @pytest.mark.asyncio
    async def test_id_outside_view_is_ignored(self, library: ContentLibraryAggregator) -> None:
        await library.load_more()
        await library.set_filter(LibraryFilter(platform="twitter"))

        assert library.toggle_selection("gen-1") is False
        assert library.toggle_selection("unknown") is False
        assert library.selected_ids == set()

    @pytest.mark.asyncio
    async def test_hidden_selected_id_can_be_deselected(
        self, library: ContentLibraryAggregator
    ) -> None:
        await library.load_more()
        library.toggle_selection("gen-1")
        await library.set_filter(LibraryFilter(platform="twitter"))

        assert library.toggle_selection("gen-1") is False
        assert library.selected_ids == set()
        assert library.toggle_selection("gen-1") is False
        assert library.selected_ids == set()

    @pytest.mark.asyncio
    async def test_selection_survives_view_changes(
        self, library: ContentLibraryAggregator
    ) -> None:
        await library.load_more()
        library.toggle_selection("gen-1")

        await library.set_filter(LibraryFilter(platform="twitter"))
        library.set_sort(SortKey.OLDEST)
        await library.set_filter(LibraryFilter())

        assert library.selected_ids == {"gen-1"}

        library.clear_selection()
        assert library.selected_ids == set()

    @pytest.mark.asyncio
    async def test_select_all_and_discard(self, library: ContentLibraryAggregator) -> None:
        await _load_all(library)
        await library.set_filter(LibraryFilter(platform="linkedin"))
        library.select_all()
        assert library.selected_ids == {"gen-1", "gen-4"}

        library.discard(["gen-1"])

        assert library.selected_ids == {"gen-4"}
        assert "gen-1" not in _ids(library.collection)
        assert len(library.collection) == 4


# ---------- stats / feedback ----------


class TestStatsAndFeedback:
    @pytest.mark.asyncio
    async def test_stats(self, library: ContentLibraryAggregator) -> None:
        await _load_all(library)
        await library.set_filter(LibraryFilter(platform="twitter"))

        stats = library.stats

        assert stats.total == 5
        assert stats.written == 4
        assert stats.carousels == 1
        assert stats.videos == 0
        assert stats.this_week == 3
        assert stats.by_platform == {"linkedin": 2, "twitter": 1, "instagram": 1}

    @pytest.mark.asyncio
    async def test_feedback_sent(self, fetcher: FakeFetcher) -> None:
        feedback = AsyncMock()
        library = ContentLibraryAggregator(fetcher, feedback=feedback)

        assert await library.send_feedback("gen-1", FeedbackVerdict.GOOD) is True
        feedback.send_feedback.assert_awaited_once_with("gen-1", FeedbackVerdict.GOOD)

    @pytest.mark.asyncio
    async def test_feedback_failure_is_swallowed(self, fetcher: FakeFetcher) -> None:
        feedback = AsyncMock()
        feedback.send_feedback.side_effect = ApiError("Failed to send feedback")
        library = ContentLibraryAggregator(fetcher, feedback=feedback)

        assert await library.send_feedback("gen-1", FeedbackVerdict.BAD) is False

    @pytest.mark.asyncio
    async def test_no_feedback_channel(self, library: ContentLibraryAggregator) -> None:
        assert await library.send_feedback("gen-1", FeedbackVerdict.GOOD) is False
