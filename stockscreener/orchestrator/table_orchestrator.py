"""
Table orchestrator.

Composes the normalizer, derived metrics, rank/sort engine, access gate and
watchlist reconciler into one paginated, sortable, column-configurable table.

Page load:
  A: cache lookup       key = (dataset, page, limit, sort, search), TTL config.CACHE_TTL_SECONDS
  B: fetch              derived sort → one large unsorted page, sorted + sliced locally
                        otherwise    → server-sorted page, order passed through
  C: enrich + rank      rank = page * limit + index + 1
  D: watch flags        displayed membership from the reconciler ledger
  E: prefetch           next two pages of this dataset, first three pages of the others

Failure behavior:
  - fetch errors keep the last good rows and expose a retryable error
  - watchlist errors become notifications; the table never sees an exception
  - prefetch is best-effort and never touches the visible rows
  - a page that resolves after the view moved on is cached but not shown
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from stockscreener import config
from stockscreener.api_clients.fundamentals_client import FundamentalsClient
from stockscreener.services import access_gate
from stockscreener.services.access_gate import AccessContext
from stockscreener.services.columns import ALL_COLUMNS, CustomLayout
from stockscreener.services.derived_metrics import enrich_records
from stockscreener.services.errors import (
    MutationPendingError,
    SourceFetchError,
    WatchlistError,
)
from stockscreener.services.rank_sort import (
    SortSpec,
    assign_ranks,
    build_sort_spec,
    merge_by_symbol,
    next_sort_spec,
    order_rows,
    paginate,
)
from stockscreener.services.watchlist_state import WatchlistReconciler

logger = logging.getLogger(__name__)

PREFETCH_AHEAD = 2
PREFETCH_OTHER_DATASET_PAGES = 3

CacheKey = tuple[str, int, int, str | None, str | None, str]


# ---------------------------------------------------------------------------
# Page cache
# ---------------------------------------------------------------------------

class PageCache:
    """TTL cache of fetched pages, owned by one orchestrator."""

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.CACHE_TTL_SECONDS
        self._clock = clock
        self._entries: dict[CacheKey, tuple[float, dict[str, Any]]] = {}

    @staticmethod
    def key(dataset: str, page: int, limit: int, sort: SortSpec | None, search: str | None) -> CacheKey:
        return (
            dataset,
            page,
            limit,
            sort.column_id if sort else None,
            sort.direction if sort else None,
            (search or "").strip().lower(),
        )

    def get(self, key: CacheKey) -> dict[str, Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def put(self, key: CacheKey, value: dict[str, Any]) -> None:
        self._entries[key] = (self._clock(), value)

    def discard(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def invalidate_dataset(self, dataset: str) -> int:
        stale = [k for k in self._entries if k[0] == dataset]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: CacheKey) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# View models
# ---------------------------------------------------------------------------

@dataclass
class Notification:
    level: str          # "error" | "info"
    title: str
    message: str


@dataclass
class TableView:
    rows: list[dict[str, Any]]
    columns: list[str]
    total: int
    has_more: bool
    page: int
    limit: int
    error: str | None = None
    from_cache: bool = False
    sort: SortSpec | None = None
    pending_symbols: frozenset = field(default_factory=frozenset)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TableOrchestrator:
    def __init__(
        self,
        fundamentals: FundamentalsClient,
        reconciler: WatchlistReconciler | None = None,
        ctx: AccessContext | None = None,
        dataset: str = "sp500",
        limit: int | None = None,
        cache: PageCache | None = None,
        prefetch: bool = True,
    ):
        self.fundamentals = fundamentals
        self.reconciler = reconciler
        if reconciler is not None and reconciler.rows is None:
            reconciler.rows = self
        self.ctx = ctx or AccessContext()
        self.dataset = dataset
        self.page = 0
        self.limit = limit if limit is not None else config.PAGE_LIMIT
        self.sort: SortSpec | None = None
        self.search: str = ""
        self.cache = cache if cache is not None else PageCache()
        self.prefetch_enabled = prefetch

        self.selected_layout: str | None = None
        self.visibility: dict[str, bool] = access_gate.default_visibility(self.ctx, dataset)
        self.notifications: list[Notification] = []

        self.rows: list[dict[str, Any]] = []
        self.total = 0
        self.has_more = False
        self.error: str | None = None
        self._prefetch_tasks: set[asyncio.Task] = set()

    # -- state changes -------------------------------------------------------

    def set_access(self, ctx: AccessContext) -> None:
        self.ctx = ctx
        if self.selected_layout is None:
            self.visibility = access_gate.default_visibility(ctx, self.dataset)
        else:
            self.visibility = access_gate.enforce_visibility(self.visibility, ctx, self.dataset)
        self._drop_locked_sort()

    def set_dataset(self, dataset: str) -> None:
        if dataset == self.dataset:
            return
        self.dataset = dataset
        self.page = 0
        self.selected_layout = None
        self.visibility = access_gate.default_visibility(self.ctx, dataset)
        self._drop_locked_sort()

    def set_page(self, page: int) -> None:
        self.page = max(0, page)

    def set_search(self, search: str | None) -> None:
        self.search = (search or "").strip()
        self.page = 0

    def click_sort(self, column_id: str) -> bool:
        """Header click. Locked or unknown columns leave the current sort in place."""
        if not access_gate.can_sort_by(column_id, self.ctx, self.dataset):
            self.notify("info", "Upgrade required", f"Sorting by {column_id} requires a paid plan.")
            return False
        self.sort = next_sort_spec(self.sort, column_id)
        self.page = 0
        return True

    def set_sort(self, column_id: str | None, direction: str | None = None) -> None:
        """Explicit sort selection; raises LockedColumnError / ValueError."""
        if column_id is None:
            self.sort = None
            return
        access_gate.check_sort_key(column_id, self.ctx, self.dataset)
        self.sort = build_sort_spec(column_id, direction)
        self.page = 0

    def _drop_locked_sort(self) -> None:
        if self.sort and not access_gate.can_sort_by(self.sort.column_id, self.ctx, self.dataset):
            logger.info("[Table] sort %s locked on %s, cleared", self.sort.column_id, self.dataset)
            self.sort = None

    def toggle_column(self, column_id: str, visible: bool) -> bool:
        """Returns whether the column ended up in the requested state."""
        self.visibility = access_gate.toggle_column(self.visibility, column_id, visible, self.ctx, self.dataset)
        applied = self.visibility.get(column_id) == bool(visible)
        if not applied and visible:
            self.notify("info", "Upgrade required", f"{column_id} is available on paid plans.")
        return applied

    def select_layout(self, layout_key: str) -> bool:
        """Apply a preset layout. A locked layout is a no-op and returns False."""
        if access_gate.is_layout_locked(layout_key, self.ctx, self.dataset):
            return False
        self.visibility = access_gate.apply_layout(self.visibility, layout_key, self.ctx, self.dataset)
        self.selected_layout = layout_key
        return True

    def select_custom_layout(self, layout: CustomLayout) -> list[str]:
        """Apply a saved layout; returns the columns stripped by the access gate."""
        self.visibility, stripped = access_gate.apply_custom_layout(layout, self.ctx, self.dataset)
        self.selected_layout = layout.key
        if stripped:
            self.notify(
                "info",
                "Upgrade required",
                f"{layout.name}: {', '.join(stripped)} available on paid plans.",
            )
        return stripped

    def visible_columns(self) -> list[str]:
        return [c.id for c in ALL_COLUMNS if self.visibility.get(c.id)]

    def sort_menu(self) -> list[dict[str, Any]]:
        return access_gate.sort_menu(self.ctx, self.dataset)

    def layout_menu(self) -> list[dict[str, Any]]:
        return access_gate.layout_menu(self.ctx, self.dataset)

    def notify(self, level: str, title: str, message: str) -> None:
        self.notifications.append(Notification(level, title, message))

    def drain_notifications(self) -> list[Notification]:
        out, self.notifications = self.notifications, []
        return out

    # -- loading -------------------------------------------------------------

    def _cache_key(self, dataset: str | None = None, page: int | None = None) -> CacheKey:
        return PageCache.key(
            dataset or self.dataset,
            self.page if page is None else page,
            self.limit,
            self.sort,
            self.search,
        )

    async def _fetch_page(self, dataset: str, page: int, sort: SortSpec | None, search: str) -> dict[str, Any]:
        offset = page * self.limit
        if sort is not None and sort.is_derived_sort:
            data = await self.fundamentals.fetch_page(
                dataset, offset=0, limit=config.DERIVED_FETCH_LIMIT, sort=None, search=search,
            )
            candidates = order_rows(enrich_records(data["rows"]), sort)
            rows = paginate(candidates, page, self.limit)
            total = len(candidates)
            has_more = offset + len(rows) < total
        else:
            data = await self.fundamentals.fetch_page(
                dataset, offset=offset, limit=self.limit, sort=sort, search=search,
            )
            rows = order_rows(enrich_records(data["rows"]), sort, server_sorted=True)
            total = data["total"]
            has_more = data["has_more"]
        return {"rows": assign_ranks(rows, offset), "total": total, "has_more": has_more}

    async def load(self) -> TableView:
        key = self._cache_key()
        cached = self.cache.get(key)
        from_cache = cached is not None
        if cached is None:
            dataset, page = self.dataset, self.page
            try:
                cached = await self._fetch_page(dataset, page, self.sort, self.search)
            except SourceFetchError as exc:
                if key != self._cache_key():
                    logger.debug("[Table] superseded %s page %d failed: %s", dataset, page, exc)
                    return self._view(from_cache=False)
                self.error = str(exc)
                logger.warning("[Table] %s page %d failed, keeping %d rows: %s",
                               dataset, page, len(self.rows), exc)
                return self._view(from_cache=False)
            self.cache.put(key, cached)
            # dataset/page/sort/search moved on while this page was in flight
            if key != self._cache_key():
                logger.debug("[Table] %s page %d superseded, cached only", dataset, page)
                return self._view(from_cache=False)

        self.error = None
        self.rows = self._apply_watch_flags(merge_by_symbol(self.rows, cached["rows"]))
        self.total = cached["total"]
        self.has_more = cached["has_more"]
        if self.prefetch_enabled:
            self.schedule_prefetch()
        return self._view(from_cache=from_cache)

    async def retry(self) -> TableView:
        self.cache.discard(self._cache_key())
        return await self.load()

    def _view(self, from_cache: bool) -> TableView:
        pending = self.reconciler.ledger.pending_symbols() if self.reconciler else frozenset()
        return TableView(
            rows=[dict(r) for r in self.rows],
            columns=self.visible_columns(),
            total=self.total,
            has_more=self.has_more,
            page=self.page,
            limit=self.limit,
            error=self.error,
            from_cache=from_cache,
            sort=self.sort,
            pending_symbols=pending,
        )

    def _apply_watch_flags(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if self.reconciler is None:
            return rows
        ledger = self.reconciler.ledger
        for row in rows:
            if row.get("symbol") and (ledger.loaded or ledger.has_override(row["symbol"])):
                row["is_watched"] = ledger.is_watched(row["symbol"])
        return rows

    # -- prefetch ------------------------------------------------------------

    def prefetch_keys(self) -> list[tuple[str, int]]:
        targets: list[tuple[str, int]] = []
        if self.has_more:
            targets += [(self.dataset, self.page + n) for n in range(1, PREFETCH_AHEAD + 1)]
        for dataset in config.DATASET_ENDPOINTS:
            if dataset != self.dataset:
                targets += [(dataset, p) for p in range(PREFETCH_OTHER_DATASET_PAGES)]
        return [(d, p) for d, p in targets if self._cache_key(d, p) not in self.cache]

    def schedule_prefetch(self) -> asyncio.Task | None:
        targets = self.prefetch_keys()
        if not targets:
            return None
        task = asyncio.create_task(self._prefetch(targets, self.sort, self.search))
        self._prefetch_tasks.add(task)
        task.add_done_callback(self._prefetch_tasks.discard)
        return task

    async def _prefetch(self, targets: list[tuple[str, int]], sort: SortSpec | None, search: str) -> None:
        async def one(dataset: str, page: int) -> None:
            # other datasets may lock the active sort key; prefetch those unsorted
            page_sort = sort
            if sort is not None and not access_gate.can_sort_by(sort.column_id, self.ctx, dataset):
                page_sort = None
            key = PageCache.key(dataset, page, self.limit, page_sort, search)
            if key in self.cache:
                return
            self.cache.put(key, await self._fetch_page(dataset, page, page_sort, search))

        results = await asyncio.gather(*(one(d, p) for d, p in targets), return_exceptions=True)
        failed = [r for r in results if isinstance(r, BaseException)]
        if failed:
            logger.debug("[Table] prefetch: %d/%d pages failed", len(failed), len(targets))

    async def wait_for_prefetch(self) -> None:
        if self._prefetch_tasks:
            await asyncio.gather(*list(self._prefetch_tasks), return_exceptions=True)

    # -- row flag sink (watchlist reconciler) --------------------------------

    def get_row_flag(self, symbol: str) -> bool | None:
        for row in self.rows:
            if row.get("symbol") == symbol:
                return row.get("is_watched")
        return None

    def set_row_flag(self, symbol: str, value: bool | None) -> None:
        for row in self.rows:
            if row.get("symbol") == symbol:
                row["is_watched"] = value

    # -- watchlist actions ---------------------------------------------------

    def is_watch_control_disabled(self, symbol: str) -> bool:
        return self.reconciler is not None and self.reconciler.ledger.is_pending(symbol)

    async def refresh_memberships(self) -> None:
        if self.reconciler is None:
            return
        try:
            await self.reconciler.refresh()
        except SourceFetchError as exc:
            self.notify("error", "Watchlist unavailable", str(exc))
            return
        self._apply_watch_flags(self.rows)

    async def _mutate(self, action: str, symbol: str, call) -> bool:
        if self.reconciler is None:
            self.notify("error", "Sign in required", "Sign in to manage your watchlists.")
            return False
        try:
            await call()
        except MutationPendingError:
            logger.debug("[Table] %s %s ignored, mutation in flight", action, symbol)
            return False
        except WatchlistError as exc:
            self.notify("error", "Watchlist update failed", str(exc))
            return False
        dropped = self.cache.invalidate_dataset(self.dataset)
        logger.info("[Table] %s %s ok, invalidated %d cached pages", action, symbol, dropped)
        self._apply_watch_flags(self.rows)
        return True

    async def toggle_watch(self, symbol: str) -> bool:
        return await self._mutate("toggle", symbol, lambda: self.reconciler.toggle(symbol))

    async def add_to_watchlist(self, symbol: str, watchlist_id: int | None = None) -> bool:
        return await self._mutate("add", symbol, lambda: self.reconciler.add(symbol, watchlist_id))

    async def remove_from_watchlist(self, symbol: str, watchlist_id: int | None = None) -> bool:
        return await self._mutate("remove", symbol, lambda: self.reconciler.remove(symbol, watchlist_id))

    async def move(self, symbol: str, to_id: int, from_id: int | None = None) -> bool:
        return await self._mutate("move", symbol, lambda: self.reconciler.move(symbol, to_id, from_id))

    async def copy(self, symbol: str, to_id: int, from_id: int | None = None) -> bool:
        return await self._mutate("copy", symbol, lambda: self.reconciler.copy(symbol, to_id, from_id))

