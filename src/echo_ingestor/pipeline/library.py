"""Client-side view over the server-paginated content library."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Protocol

from echo_ingestor.core.exceptions import AggregationFetchError
from echo_ingestor.core.models import (
    ContentGroup,
    ContentType,
    FeedbackVerdict,
    GroupBy,
    KitPage,
    LibraryFilter,
    LibraryPage,
    LibraryStats,
    NormalizedContentItem,
    SortKey,
)
from echo_ingestor.core.normalizer import ContentNormalizer

logger = logging.getLogger(__name__)

PLATFORM_ORDER = (
    "linkedin",
    "twitter",
    "instagram",
    "tiktok",
    "youtube",
    "blog",
    "email",
    "video-script",
)

PLATFORM_GROUP_TITLES = {
    "linkedin": "LinkedIn",
    "twitter": "Twitter/X",
    "instagram": "Instagram",
    "tiktok": "TikTok",
    "youtube": "YouTube",
    "blog": "Blog Posts",
    "email": "Newsletters",
    "video-script": "Video Scripts",
}

DATE_GROUPS = (
    ("today", "Today"),
    ("yesterday", "Yesterday"),
    ("this-week", "This Week"),
    ("this-month", "This Month"),
    ("older", "Older"),
)

TYPE_GROUPS = (
    (ContentType.VIDEO, "Video Clips"),
    (ContentType.WRITTEN, "Written Posts"),
    (ContentType.CAROUSEL, "Carousels"),
)


class KitFetcher(Protocol):
    async def fetch_kits(
        self,
        cursor: str | None = None,
        library_filter: LibraryFilter | None = None,
    ) -> KitPage: ...


class FeedbackSender(Protocol):
    async def send_feedback(self, content_id: str, verdict: FeedbackVerdict) -> None: ...


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ContentLibraryAggregator:
    """Accumulate fetched pages into one ordered collection and derive views from it.

    Pages are stored by the cursor they were requested with and stitched
    together by following each page's next cursor, so the collection always
    equals the server's own ordering. Only one fetch runs at a time; a
    ``load_more()`` issued while one is pending returns without fetching.

    Content type is server-authoritative: changing it discards the loaded
    pages and restarts from the first page. Platform, search, sort and
    grouping are derived locally from whatever has been loaded.
    """

    def __init__(
        self,
        fetcher: KitFetcher,
        *,
        normalizer: ContentNormalizer | None = None,
        feedback: FeedbackSender | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._fetcher = fetcher
        self._normalizer = normalizer or ContentNormalizer()
        self._feedback = feedback
        self._clock = clock

        self._pages: dict[str | None, LibraryPage] = {}
        self._collection: list[NormalizedContentItem] = []
        self._cursor: str | None = None
        self._has_more = True
        self._total_hint = 0
        self._loading = False
        self._fetch_task: asyncio.Task[KitPage] | None = None
        self._generation = 0

        self._filter = LibraryFilter()
        self._sort = SortKey.RECENT
        self._group_by = GroupBy.NONE
        self._selection: set[str] = set()

        self.error: AggregationFetchError | None = None

    # -- state -----------------------------------------------------------------

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def total_hint(self) -> int:
        return self._total_hint

    @property
    def library_filter(self) -> LibraryFilter:
        return self._filter

    @property
    def sort_key(self) -> SortKey:
        return self._sort

    @property
    def group_by(self) -> GroupBy:
        return self._group_by

    @property
    def collection(self) -> tuple[NormalizedContentItem, ...]:
        """Every loaded item in server order, before local filtering."""
        return tuple(self._collection)

    # -- fetching --------------------------------------------------------------

    async def load_more(self) -> bool:
        """Fetch the page after the current cursor and append it.

        Returns:
            True if a page was appended. False if a fetch was already in
            flight, the collection is exhausted, the fetch failed (see
            ``error``), or the result went stale because the filter changed.
        """
        if self._loading or not self._has_more:
            return False

        self._loading = True
        generation = self._generation
        cursor = self._cursor

        task = asyncio.create_task(self._fetcher.fetch_kits(cursor, self._filter))
        self._fetch_task = task

        try:
            kit_page = await task
            items: list[NormalizedContentItem] = []
            for kit in kit_page.kits:
                items.extend(self._normalizer.normalize_kit(kit))
        except asyncio.CancelledError:
            if generation == self._generation:
                raise
            logger.debug("Library fetch superseded (cursor=%s)", cursor)
            return False
        except Exception as e:
            if generation != self._generation:
                return False
            self.error = AggregationFetchError(f"Failed to load content: {e}")
            logger.warning("Library fetch failed (cursor=%s): %s", cursor, e)
            return False
        finally:
            if generation == self._generation:
                self._loading = False
                self._fetch_task = None

        if generation != self._generation:
            logger.debug("Discarding stale library page (cursor=%s)", cursor)
            return False

        self._pages[cursor] = LibraryPage(
            cursor=cursor,
            items=tuple(items),
            next_cursor=kit_page.next_cursor,
            total_hint=kit_page.total_hint,
        )
        self._cursor = kit_page.next_cursor
        self._has_more = kit_page.next_cursor is not None
        self._total_hint = kit_page.total_hint
        self.error = None
        self._rebuild()

        logger.debug(
            "Loaded %d items (cursor=%s, has_more=%s)", len(items), cursor, self._has_more
        )
        return True

    async def refresh(self) -> bool:
        """Drop every loaded page and fetch the first one again."""
        return await self._reload()

    async def _reload(self) -> bool:
        pending = self._reset()
        if pending is not None:
            # Let the superseded request unwind so fetches never overlap.
            await asyncio.wait([pending])
        return await self.load_more()

    def _reset(self) -> asyncio.Task[KitPage] | None:
        """Start over from the first page. Returns the cancelled in-flight fetch, if any."""
        pending, self._fetch_task = self._fetch_task, None
        if pending is not None and not pending.done():
            pending.cancel()
        self._generation += 1
        self._pages.clear()
        self._collection = []
        self._cursor = None
        self._has_more = True
        self._total_hint = 0
        self._loading = False
        self.error = None
        return pending

    def _rebuild(self) -> None:
        """Stitch pages along the cursor chain, keeping the first copy of any id."""
        seen: set[str] = set()
        collection: list[NormalizedContentItem] = []
        cursor: str | None = None
        visited: set[str | None] = set()

        while cursor in self._pages and cursor not in visited:
            visited.add(cursor)
            page = self._pages[cursor]
            for item in page.items:
                if item.item_id not in seen:
                    seen.add(item.item_id)
                    collection.append(item)
            cursor = page.next_cursor

        self._collection = collection

    def dismiss_error(self) -> None:
        self.error = None

    # -- view configuration ----------------------------------------------------

    async def set_filter(self, library_filter: LibraryFilter) -> None:
        """Apply a filter. A content-type change resets paging and refetches."""
        previous = self._filter
        self._filter = library_filter

        if library_filter.content_type != previous.content_type:
            logger.info(
                "Content type filter changed to %s; reloading",
                library_filter.content_type.value if library_filter.content_type else "all",
            )
            await self._reload()

    def set_sort(self, sort_key: SortKey) -> None:
        self._sort = sort_key

    def set_group_by(self, group_by: GroupBy) -> None:
        self._group_by = group_by

    # -- derived views ---------------------------------------------------------

    @property
    def items(self) -> list[NormalizedContentItem]:
        """The filtered and sorted view."""
        return self._sorted(self._filtered(self._collection))

    @property
    def groups(self) -> list[ContentGroup]:
        """Partition the current view into buckets, in fixed bucket order.

        Empty buckets are omitted. Items keep the active sort within a bucket.
        """
        view = self.items

        if self._group_by is GroupBy.DATE:
            return self._group_by_date(view)
        if self._group_by is GroupBy.PLATFORM:
            return self._group_by_platform(view)
        if self._group_by is GroupBy.TYPE:
            return _collect(
                view,
                lambda item: item.content_type,
                [(content_type.value, content_type, title) for content_type, title in TYPE_GROUPS],
            )
        return [ContentGroup(key="all", title="All Content", items=tuple(view))]

    def _filtered(self, items: Iterable[NormalizedContentItem]) -> list[NormalizedContentItem]:
        library_filter = self._filter
        query = library_filter.search.strip().lower()
        result = []

        for item in items:
            if library_filter.content_type and item.content_type is not library_filter.content_type:
                continue
            if library_filter.platform and item.platform != library_filter.platform:
                continue
            if query and not _matches(item, query):
                continue
            result.append(item)

        return result

    def _sorted(self, items: list[NormalizedContentItem]) -> list[NormalizedContentItem]:
        if self._sort is SortKey.OLDEST:
            return sorted(items, key=lambda item: item.created_at)
        if self._sort is SortKey.SCORE:
            return sorted(items, key=lambda item: item.score or 0.0, reverse=True)
        return sorted(items, key=lambda item: item.created_at, reverse=True)

    def _group_by_date(self, view: list[NormalizedContentItem]) -> list[ContentGroup]:
        now = self._clock()
        start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        boundaries = (
            ("today", start_of_today),
            ("yesterday", start_of_today - timedelta(days=1)),
            ("this-week", start_of_today - timedelta(days=start_of_today.weekday())),
            ("this-month", start_of_today.replace(day=1)),
        )

        def bucket(item: NormalizedContentItem) -> str:
            for key, start in boundaries:
                if item.created_at >= start:
                    return key
            return "older"

        return _collect(view, bucket, [(key, key, title) for key, title in DATE_GROUPS])

    def _group_by_platform(self, view: list[NormalizedContentItem]) -> list[ContentGroup]:
        def bucket(item: NormalizedContentItem) -> str:
            return item.platform if item.platform in PLATFORM_GROUP_TITLES else "none"

        order = [(p, p, PLATFORM_GROUP_TITLES[p]) for p in PLATFORM_ORDER]
        order.append(("none", "none", "No Platform"))
        return _collect(view, bucket, order)

    @property
    def stats(self) -> LibraryStats:
        """Totals over the whole loaded collection."""
        week_ago = self._clock() - timedelta(days=7)
        by_platform: dict[str, int] = {}
        for item in self._collection:
            if item.platform:
                by_platform[item.platform] = by_platform.get(item.platform, 0) + 1

        return LibraryStats(
            total=len(self._collection),
            videos=sum(1 for i in self._collection if i.content_type is ContentType.VIDEO),
            written=sum(1 for i in self._collection if i.content_type is ContentType.WRITTEN),
            carousels=sum(1 for i in self._collection if i.content_type is ContentType.CAROUSEL),
            this_week=sum(1 for i in self._collection if i.created_at >= week_ago),
            by_platform=by_platform,
        )

    # -- selection -------------------------------------------------------------

    @property
    def selected_ids(self) -> frozenset[str]:
        return frozenset(self._selection)

    def toggle_selection(self, item_id: str) -> bool:
        """Toggle an id in the selection.

        Ids outside the current view cannot be selected. An id that is already
        selected can always be deselected, even while the filter hides it.

        Returns:
            True if the id is selected afterwards.
        """
        if item_id in self._selection:
            self._selection.discard(item_id)
            return False
        if not any(item.item_id == item_id for item in self.items):
            return False
        self._selection.add(item_id)
        return True

    def select_all(self) -> None:
        self._selection.update(item.item_id for item in self.items)

    def clear_selection(self) -> None:
        self._selection.clear()

    def discard(self, item_ids: Iterable[str]) -> None:
        """Remove items from the loaded collection and from the selection."""
        doomed = set(item_ids)
        for cursor, page in self._pages.items():
            kept = tuple(item for item in page.items if item.item_id not in doomed)
            if len(kept) != len(page.items):
                self._pages[cursor] = replace(page, items=kept)
        self._selection -= doomed
        self._rebuild()

    # -- feedback --------------------------------------------------------------

    async def send_feedback(self, content_id: str, verdict: FeedbackVerdict) -> bool:
        """Send a good/bad verdict. Failures are logged, never raised."""
        if self._feedback is None:
            logger.warning("No feedback channel configured; dropping verdict for %s", content_id)
            return False
        try:
            await self._feedback.send_feedback(content_id, verdict)
        except Exception as e:
            logger.warning("Failed to send feedback for %s: %s", content_id, e)
            return False
        return True


def _matches(item: NormalizedContentItem, query: str) -> bool:
    return (
        query in item.title.lower()
        or query in item.text.lower()
        or (item.platform is not None and query in item.platform.lower())
    )


def _collect(
    view: list[NormalizedContentItem],
    key: Callable[[NormalizedContentItem], object],
    order: list[tuple[str, object, str]],
) -> list[ContentGroup]:
    """Bucket `view` by `key`, emitting non-empty buckets in `order`.

    Each entry of `order` is (group key, bucket value, title).
    """
    buckets: dict[object, list[NormalizedContentItem]] = {}
    for item in view:
        buckets.setdefault(key(item), []).append(item)

    return [
        ContentGroup(key=group_key, title=title, items=tuple(buckets[value]))
        for group_key, value, title in order
        if buckets.get(value)
    ]
