"""
Search/pagination parameter model.

Turns raw filter input into canonical SearchParams and debounces text-input
bursts so only the settled value reaches the QueryCache.
"""

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Mapping

from loguru import logger

from schoolsync.services.cache import clean_params

DEFAULT_PAGE_SIZE = 20
DEFAULT_SORT = "createdAt,desc"
PAGING_FIELDS = ("page", "size", "sort")


@dataclass(frozen=True)
class SearchParams:
    """Canonical filters plus explicit paging fields."""

    filters: tuple[tuple[str, str], ...] = ()
    page: int = 0
    size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT

    @property
    def filter_dict(self) -> dict[str, str]:
        return dict(self.filters)

    def to_query(self) -> dict[str, Any]:
        """Query parameters for a list endpoint."""
        return {**self.filter_dict, "page": self.page, "size": self.size, "sort": self.sort}


def canonicalize(
    raw_filters: Mapping[str, Any] | None,
    default_size: int = DEFAULT_PAGE_SIZE,
    default_sort: str = DEFAULT_SORT,
) -> SearchParams:
    """
    Canonicalize raw filter input.

    Blank or whitespace-only values become absent, names are sorted, and
    ``page``/``size``/``sort`` are pulled out into explicit fields with
    defaults when omitted.
    """
    raw = dict(raw_filters or {})
    paging = {name: raw.pop(name, None) for name in PAGING_FIELDS}

    page = _as_int(paging["page"], 0)
    size = _as_int(paging["size"], default_size)
    sort = str(paging["sort"]).strip() if paging["sort"] is not None else ""

    return SearchParams(
        filters=tuple(clean_params(raw).items()),
        page=max(0, page),
        size=size if size > 0 else default_size,
        sort=sort or default_sort,
    )


def _as_int(value: Any, default: int) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class SearchParamModel:
    """
    Current search state for one list view.

    Any change to a filter value resets the page to 0; changing only the
    page keeps the filters. Changing the page size also returns to page 0.

    Usage:
        model = SearchParamModel()
        model.set_filter("lastName", "Rao")
        model.next_page()
        params = model.params  # SearchParams(filters=(("lastName", "Rao"),), page=1, ...)
    """

    def __init__(
        self,
        initial: Mapping[str, Any] | None = None,
        default_size: int = DEFAULT_PAGE_SIZE,
        default_sort: str = DEFAULT_SORT,
    ):
        self._default_size = default_size
        self._default_sort = default_sort
        self._raw: dict[str, Any] = {
            k: v for k, v in (initial or {}).items() if k not in PAGING_FIELDS
        }
        self._params = canonicalize(initial, default_size, default_sort)

    @property
    def params(self) -> SearchParams:
        return self._params

    def set_filter(self, name: str, value: Any) -> SearchParams:
        return self.set_filters({name: value})

    def set_filters(self, changes: Mapping[str, Any]) -> SearchParams:
        """Apply filter edits; resets to page 0 if the canonical filters changed."""
        for name, value in changes.items():
            if name in PAGING_FIELDS:
                raise ValueError(f"{name!r} is a paging field, not a filter")
            self._raw[name] = value

        filters = tuple(clean_params(self._raw).items())
        if filters != self._params.filters:
            self._params = replace(self._params, filters=filters, page=0)
        return self._params

    def clear_filters(self) -> SearchParams:
        self._raw.clear()
        if self._params.filters:
            self._params = replace(self._params, filters=(), page=0)
        return self._params

    def set_page(self, page: int) -> SearchParams:
        self._params = replace(self._params, page=max(0, page))
        return self._params

    def next_page(self) -> SearchParams:
        return self.set_page(self._params.page + 1)

    def prev_page(self) -> SearchParams:
        return self.set_page(self._params.page - 1)

    def set_size(self, size: int) -> SearchParams:
        size = size if size > 0 else self._default_size
        if size != self._params.size:
            self._params = replace(self._params, size=size, page=0)
        return self._params

    def set_sort(self, sort: str) -> SearchParams:
        sort = sort.strip() or self._default_sort
        if sort != self._params.sort:
            self._params = replace(self._params, sort=sort, page=0)
        return self._params

    def reset(self) -> SearchParams:
        self._raw.clear()
        self._params = SearchParams(size=self._default_size, sort=self._default_sort)
        return self._params


@dataclass
class DebounceStats:
    """Debounce statistics."""

    edits: int = 0
    emissions: int = 0
    suppressed: int = 0  # Settled bursts that changed nothing

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "edits": self.edits,
            "emissions": self.emissions,
            "suppressed": self.suppressed,
        }


class SearchDebouncer:
    """
    Debounces text-input edits into canonical SearchParams emissions.

    Each ``edit()`` restarts the window; once the window passes with no
    further edits, the settled params are emitted (if they differ from the
    last emission). Paging changes bypass the window.

    Usage:
        debouncer = SearchDebouncer(SearchParamModel(), window=0.4)
        debouncer.edit("lastName", "R")
        debouncer.edit("lastName", "Rao")
        params = await debouncer.next()
    """

    def __init__(
        self,
        model: SearchParamModel | None = None,
        window: float = 0.4,
        debug: bool = False,
    ):
        self._model = model or SearchParamModel()
        self._window = window
        self._debug = debug
        self._pending: asyncio.TimerHandle | None = None
        self._queue: asyncio.Queue[SearchParams] = asyncio.Queue()
        self._last_emitted: SearchParams | None = None
        self._stats = DebounceStats()

    @property
    def model(self) -> SearchParamModel:
        return self._model

    @property
    def window(self) -> float:
        return self._window

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def edit(self, name: str, value: Any) -> None:
        """Record a text-input edit; emission waits for the window to settle."""
        self._model.set_filter(name, value)
        self._stats.edits += 1
        self._restart_timer()

    def set_page(self, page: int) -> None:
        """Page changes are emitted immediately, flushing pending edits first."""
        self._cancel_timer()
        self._model.set_page(page)
        self._emit()

    def flush(self) -> None:
        """Emit pending edits now (e.g. the user pressed Enter)."""
        if self._pending is not None:
            self._cancel_timer()
            self._emit()

    def _restart_timer(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._pending = loop.call_later(self._window, self._on_settled)

    def _cancel_timer(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _on_settled(self) -> None:
        self._pending = None
        self._emit()

    def _emit(self) -> None:
        params = self._model.params
        if params == self._last_emitted:
            self._stats.suppressed += 1
            self._log(f"SUPPRESS: unchanged {params}")
            return
        self._last_emitted = params
        self._stats.emissions += 1
        self._log(f"EMIT: {params}")
        self._queue.put_nowait(params)

    async def next(self) -> SearchParams:
        """Wait for the next settled parameter set."""
        return await self._queue.get()

    def pending_emissions(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._cancel_timer()

    def get_stats(self) -> DebounceStats:
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[SearchDebouncer] {message}")
