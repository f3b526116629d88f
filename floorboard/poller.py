"""Multi-source polling for the floor dashboards.

One :class:`MultiSourcePoller` exists per (filters, view) pair.  Each tick it
refreshes the dashboard segments and, on slower multiples of the tick, the
target headers, style media, WIP snapshots and the hourly variance series of
the card currently on screen.  Every source owns a :class:`SourceSlot`, so a
newer fetch of the same source always supersedes an older one and a cancelled
fetch never touches the caches.

Sources are independent: a segments result may be applied before the
headers of the same tick arrive.  The next header tick corrects any mismatch.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from .concurrency import BoundedWorkerPool, CancelToken, SourceSlot
from .exceptions import FloorApiError, RequestCancelled
from .keys import (
    color_model_of,
    header_id,
    make_style_media_key,
    pick_latest,
    segment_key_of,
    sort_segments,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DashboardFilters:
    factory: str
    building: str
    date: str
    line: str = "ALL"

    @property
    def complete(self) -> bool:
        return bool(self.factory and self.building and self.date)

    @property
    def valid_date(self) -> bool:
        try:
            datetime.strptime(self.date, "%Y-%m-%d")
        except ValueError:
            return False
        return True

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], defaults: Mapping[str, Any] | None = None):
        """Build filters from request args, filling blanks from ``defaults``."""

        defaults = defaults or {}

        def pick(name: str, fallback: str = "") -> str:
            value = values.get(name) or defaults.get(name) or fallback
            return str(value).strip()

        return cls(
            factory=pick("factory"),
            building=pick("building"),
            date=pick("date"),
            line=pick("line", "ALL") or "ALL",
        )

    def describe(self) -> str:
        return f"{self.factory}/{self.building}/{self.date}/{self.line}"


@dataclass(frozen=True)
class ViewConfig:
    """Refresh strategy for one kind of dashboard view."""

    name: str
    refresh_seconds: float
    header_every: int = 6
    media_every: int = 12
    wip_mode: str = "all"
    wip_every: int = 9
    wip_concurrency: int = 5
    variance_every: int = 0
    slide_seconds: float = 0


GRID_VIEW = ViewConfig(name="grid", refresh_seconds=10, wip_mode="all", wip_every=9)
TV_VIEW = ViewConfig(
    name="tv",
    refresh_seconds=15,
    wip_mode="current",
    wip_every=3,
    variance_every=3,
    slide_seconds=10,
)

VIEWS = {view.name: view for view in (GRID_VIEW, TV_VIEW)}


@dataclass(frozen=True)
class PollerSnapshot:
    segments: tuple = ()
    headers: dict = field(default_factory=dict)
    media: dict = field(default_factory=dict)
    wip: dict = field(default_factory=dict)
    variance: tuple = ()
    variance_key: str = ""
    current_index: int = 0
    tick: int = 0
    loading: bool = False
    error: str = ""
    updated_at: datetime | None = None

    @property
    def current_segment(self) -> dict | None:
        if not self.segments:
            return None
        return self.segments[self.current_index % len(self.segments)]


def _wip_identity(row: Mapping[str, Any], header: Mapping[str, Any] | None):
    """Return ``(line, buyer, style)`` for a WIP request, header values first."""

    header = header or {}
    line = row.get("line") or header.get("line") or ""
    buyer = header.get("buyer") or row.get("buyer") or ""
    style = header.get("style") or row.get("style") or ""
    return str(line).strip(), str(buyer).strip(), str(style).strip()


class MultiSourcePoller:
    """Keeps the dashboard caches for one filter tuple fresh."""

    def __init__(
        self,
        client,
        filters: DashboardFilters,
        view: ViewConfig = GRID_VIEW,
        idle_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.filters = filters
        self.view = view
        self.idle_seconds = idle_seconds
        self._clock = clock

        self._lock = threading.RLock()
        self._segments: list = []
        self._headers: dict = {}
        self._media: dict = {}
        self._wip: dict = {}
        self._variance: list = []
        self._variance_key = ""
        self._index = 0
        self._tick = 0
        self._loading = False
        self._error = ""
        self._updated_at: datetime | None = None

        self._scope = CancelToken()
        self._slots = {
            name: SourceSlot(name)
            for name in ("segments", "headers", "media", "wip", "variance")
        }
        self.wip_pool = BoundedWorkerPool(view.wip_concurrency)

        self._last_seen = clock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._immediate = False
        self._thread: threading.Thread | None = None

    # -- observation -------------------------------------------------------

    @property
    def last_seen(self) -> float:
        return self._last_seen

    @property
    def paused(self) -> bool:
        return self._clock() - self._last_seen > self.idle_seconds

    def touch(self) -> None:
        """Record a viewer read; the first read after an idle spell polls at once."""

        resumed = self.paused
        self._last_seen = self._clock()
        if resumed:
            logger.debug("Poller %s resumed", self.filters.describe())
            self.request_tick()

    def request_tick(self) -> None:
        self._immediate = True
        self._wake.set()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -- thread ------------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"poller-{self.view.name}-{self.filters.describe()}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the loop and cancel every in-flight request."""

        self._stop.set()
        self._scope.cancel()
        for slot in self._slots.values():
            slot.cancel()
        self._wake.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        next_tick = self._clock()
        next_slide = next_tick + (self.view.slide_seconds or 0)
        while not self._stop.is_set():
            now = self._clock()
            if self._immediate or now >= next_tick:
                self._immediate = False
                if not self.paused:
                    self._safe_step(self.tick)
                next_tick = now + self.view.refresh_seconds
            if self.view.slide_seconds and now >= next_slide:
                if not self.paused:
                    self._safe_step(self.advance_card)
                next_slide = now + self.view.slide_seconds
            deadline = next_tick
            if self.view.slide_seconds:
                deadline = min(deadline, next_slide)
            self._wake.wait(timeout=max(deadline - self._clock(), 0.05))
            self._wake.clear()

    def _safe_step(self, step: Callable[[], None]) -> None:
        try:
            step()
        except Exception:
            logger.exception("Poller %s step failed", self.filters.describe())

    # -- ticks -------------------------------------------------------------

    def tick(self) -> None:
        """Run one poll tick synchronously."""

        with self._lock:
            tick = self._tick
        if not self.filters.complete:
            self._clear()
            with self._lock:
                self._tick += 1
            return

        with self._lock:
            self._loading = True
        try:
            self.fetch_segments()
            if tick % self.view.header_every == 0:
                self.fetch_headers()
            if tick % self.view.media_every == 0:
                self.fetch_style_media()
            if self.view.wip_mode == "all":
                if tick % self.view.wip_every == 0:
                    self.fetch_wip()
            else:
                self.fetch_wip(current_only=True, force=tick % self.view.wip_every == 0)
            if self.view.variance_every:
                current_key = self._current_key()
                if tick % self.view.variance_every == 0 or current_key != self._variance_key:
                    self.fetch_variance()
        finally:
            with self._lock:
                self._loading = False
                self._tick += 1
                self._updated_at = datetime.now(timezone.utc)

    def advance_card(self) -> None:
        """Show the next segment and load its WIP and variance when needed."""

        with self._lock:
            # Nothing to slide to with a single card.
            if len(self._segments) <= 1:
                return
            self._index = (self._index + 1) % len(self._segments)
        if self.view.wip_mode == "current":
            self.fetch_wip(current_only=True)
        if self.view.variance_every:
            self.fetch_variance()

    def _clear(self) -> None:
        with self._lock:
            self._segments = []
            self._headers = {}
            self._media = {}
            self._wip = {}
            self._variance = []
            self._variance_key = ""
            self._index = 0
            self._error = ""

    def _current_row(self) -> dict | None:
        with self._lock:
            if not self._segments:
                return None
            return self._segments[self._index % len(self._segments)]

    def _current_key(self) -> str:
        row = self._current_row()
        return segment_key_of(row) if row else ""

    # -- sources -----------------------------------------------------------

    def _begin(self, name: str) -> CancelToken:
        return self._slots[name].begin(self._scope)

    def _failed(self, name: str, exc: FloorApiError) -> None:
        logger.warning(
            "Polling %s failed for %s: %s", name, self.filters.describe(), exc
        )

    def fetch_segments(self) -> None:
        slot = self._slots["segments"]
        token = self._begin("segments")
        f = self.filters
        try:
            rows = self.client.fetch_dashboard_segments(
                f.factory, f.building, f.date, line=f.line, token=token
            )
        except RequestCancelled:
            return
        except FloorApiError as exc:
            if slot.is_current(token):
                self._failed("segments", exc)
                with self._lock:
                    self._segments = []
                    self._index = 0
                    self._error = str(exc) or "Failed to load dashboard"
            return
        if not slot.is_current(token):
            return
        with self._lock:
            self._segments = sort_segments(rows)
            if self._segments:
                self._index %= len(self._segments)
            else:
                self._index = 0
            self._error = ""

    def fetch_headers(self) -> None:
        slot = self._slots["headers"]
        token = self._begin("headers")
        f = self.filters
        try:
            records = self.client.fetch_target_headers(
                f.factory, f.building, f.date, line=f.line, token=token
            )
        except RequestCancelled:
            return
        except FloorApiError as exc:
            if slot.is_current(token):
                self._failed("headers", exc)
                with self._lock:
                    self._headers = {}
            return
        if not slot.is_current(token):
            return
        merged: dict = {}
        for record in records:
            if not isinstance(record, Mapping):
                continue
            key = segment_key_of(record)
            merged[key] = pick_latest(merged[key], record) if key in merged else record
        with self._lock:
            self._headers = merged

    def fetch_style_media(self) -> None:
        slot = self._slots["media"]
        token = self._begin("media")
        f = self.filters
        try:
            docs = self.client.fetch_style_media(f.factory, f.building, f.date, token=token)
        except RequestCancelled:
            return
        except FloorApiError as exc:
            if slot.is_current(token):
                self._failed("style media", exc)
                with self._lock:
                    self._media = {}
            return
        if not slot.is_current(token):
            return
        mapped: dict = {}
        for doc in docs:
            if not isinstance(doc, Mapping):
                continue
            key = make_style_media_key(
                doc.get("factory") or f.factory,
                doc.get("assigned_building") or doc.get("building") or f.building,
                doc.get("buyer"),
                doc.get("style"),
                color_model_of(doc),
            )
            mapped.setdefault(key, doc)
        with self._lock:
            self._media = mapped

    def fetch_wip(self, current_only: bool = False, force: bool = True) -> None:
        """Refresh WIP snapshots.

        In ``current_only`` mode only the card on screen is fetched, and only
        when ``force`` is set or it has no cached snapshot yet.
        """

        f = self.filters
        with self._lock:
            headers = dict(self._headers)
            if current_only:
                row = self._current_row()
                rows = [row] if row else []
            else:
                rows = list(self._segments)
            cached = set(self._wip)

        jobs = []
        for row in rows:
            key = segment_key_of(row)
            if current_only and not force and key in cached:
                continue
            line, buyer, style = _wip_identity(row, headers.get(key))
            if not (line and buyer and style):
                continue
            jobs.append((key, line, buyer, style))
        if not jobs:
            return

        slot = self._slots["wip"]
        token = self._begin("wip")

        def make_task(line, buyer, style):
            return lambda: self.client.fetch_style_wip(
                f.factory, f.building, line, buyer, style, f.date, token=token
            )

        results = self.wip_pool.run(
            [make_task(line, buyer, style) for _, line, buyer, style in jobs], token
        )
        if not slot.is_current(token):
            return
        with self._lock:
            for (key, line, _, _), result in zip(jobs, results):
                if isinstance(result, RequestCancelled):
                    continue
                if isinstance(result, Exception):
                    logger.warning(
                        "Polling WIP failed for %s %s: %s", self.filters.describe(), line, result
                    )
                    continue
                if result is not None:
                    self._wip[key] = result

    def fetch_variance(self) -> None:
        slot = self._slots["variance"]
        row = self._current_row()
        if row is None:
            with self._lock:
                self._variance = []
                self._variance_key = ""
            return
        key = segment_key_of(row)
        with self._lock:
            header = self._headers.get(key)
        token = self._begin("variance")
        f = self.filters
        hid = header_id(header)
        try:
            if hid:
                records = self.client.fetch_hourly_productions(header_id=hid, token=token)
            else:
                header = header or {}
                records = self.client.fetch_hourly_productions(
                    building=header.get("assigned_building") or f.building,
                    line=row.get("line") or header.get("line"),
                    date=f.date,
                    factory=f.factory,
                    token=token,
                )
        except RequestCancelled:
            return
        except FloorApiError as exc:
            if slot.is_current(token):
                self._failed("variance", exc)
                with self._lock:
                    self._variance = []
                    self._variance_key = key
            return
        if not slot.is_current(token):
            return
        with self._lock:
            self._variance = list(records)
            self._variance_key = key

    # -- reads -------------------------------------------------------------

    def snapshot(self) -> PollerSnapshot:
        with self._lock:
            return PollerSnapshot(
                segments=tuple(self._segments),
                headers=dict(self._headers),
                media=dict(self._media),
                wip=dict(self._wip),
                variance=tuple(self._variance),
                variance_key=self._variance_key,
                current_index=self._index,
                tick=self._tick,
                loading=self._loading,
                error=self._error,
                updated_at=self._updated_at,
            )


class PollerRegistry:
    """Shares pollers between viewers and stops the ones nobody watches."""

    def __init__(
        self,
        client,
        idle_seconds: float = 60,
        reap_seconds: float = 300,
        wip_concurrency: int | None = None,
        autostart: bool = True,
        clock: Callable[[], float] = time.monotonic,
        max_pollers: int = 32,
    ) -> None:
        self.client = client
        self.idle_seconds = idle_seconds
        self.reap_seconds = reap_seconds
        self.max_pollers = max_pollers
        self.wip_concurrency = wip_concurrency
        self.autostart = autostart
        self._clock = clock
        self._lock = threading.Lock()
        self._pollers: dict = {}

    def __len__(self) -> int:
        return len(self._pollers)

    def get(self, filters: DashboardFilters, view: ViewConfig = GRID_VIEW) -> MultiSourcePoller:
        if filters.complete and not filters.valid_date:
            raise ValueError(f"Invalid dashboard date '{filters.date}'")
        self.reap()
        if self.wip_concurrency and view.wip_concurrency != self.wip_concurrency:
            view = dataclasses.replace(view, wip_concurrency=self.wip_concurrency)
        key = (filters, view.name)
        evicted = None
        with self._lock:
            poller = self._pollers.get(key)
            created = poller is None
            if created and self.max_pollers and len(self._pollers) >= self.max_pollers:
                oldest = min(self._pollers, key=lambda k: self._pollers[k].last_seen)
                evicted = self._pollers.pop(oldest)
            if created:
                poller = MultiSourcePoller(
                    self.client,
                    filters,
                    view,
                    idle_seconds=self.idle_seconds,
                    clock=self._clock,
                )
                self._pollers[key] = poller
        if evicted is not None:
            logger.info("Poller limit reached, stopping %s", evicted.filters.describe())
            evicted.stop()
        if created:
            logger.info("Starting %s poller for %s", view.name, filters.describe())
            if self.autostart:
                poller.start()
        poller.touch()
        return poller

    def reap(self) -> int:
        """Stop pollers that have gone unobserved; return how many were stopped."""

        now = self._clock()
        with self._lock:
            stale = [
                key
                for key, poller in self._pollers.items()
                if now - poller.last_seen > self.reap_seconds
            ]
            stopped = [self._pollers.pop(key) for key in stale]
        for poller in stopped:
            logger.info("Stopping idle poller for %s", poller.filters.describe())
            poller.stop()
        return len(stopped)

    def shutdown(self) -> None:
        with self._lock:
            pollers = list(self._pollers.values())
            self._pollers.clear()
        for poller in pollers:
            poller.stop()
