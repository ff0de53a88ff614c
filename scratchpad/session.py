"""
Session Controller — reconciles one editing session with durable state.

State machine::

    IDLE --select/create--> VIEWING --edit--> EDITING --debounce--> SAVING
                               ^                 ^                    |
                               |                 +---- edit ----------+
                               +------------- saved ------------------+
                                                                      |
                                      SAVE_FAILED <-- retries exhausted

Invariants:
    - At most one buffer's content is unpersisted, and only the active one:
      switching buffers flushes first and aborts the switch if the flush fails.
    - Saves are serialized (one in flight); a completion for a buffer that is
      no longer active never touches the active buffer's state.
    - Unsaved content is never discarded on error; exhausted retries leave the
      content dirty and raise a retryable Notice.

Repository calls run on a single-worker thread pool so the event loop never
waits on disk I/O.  The in-memory sidebar and search results are owned by
the controller and only mutated on the event loop.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from scratchpad.errors import (
    NotFoundError,
    ScratchpadError,
    StorageError,
    ValidationError,
)
from scratchpad.ordering import resolve_next_active
from scratchpad.repository import BufferRepository
from scratchpad.types import BufferSummary, SearchResult, _now_epoch

logger = logging.getLogger(__name__)


WELCOME_CONTENT = """# Welcome to Scratchpad

An always-ready scratchpad. No files, no saving: everything persists automatically.

## Commands

| Command | Action |
|---------|--------|
| `scratchpad new` | New buffer |
| `scratchpad list` | Show buffers, pinned first |
| `scratchpad search TERMS` | Full-text search (prefix match) |
| `scratchpad pin ID` | Pin or unpin a buffer |
| `scratchpad move ID up/down` | Move a buffer up or down |
| `scratchpad delete ID` | Delete a buffer |

## Tips

- **Search** matches word prefixes: `scr pad` finds this buffer
- **Pin** important buffers to keep them at the top
- Empty buffers are cleaned up automatically on start
- Buffers auto-save as you type

Happy writing!
"""


class SessionState(str, Enum):
    IDLE = "idle"
    VIEWING = "viewing"
    EDITING = "editing"
    SAVING = "saving"
    SAVE_FAILED = "save_failed"


@dataclass
class Notice:
    """A dismissible, user-visible message."""

    id: int
    message: str
    kind: str = "error"
    retryable: bool = False
    buffer_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, StorageError) and exc.retryable


def _log_retry(retry_state) -> None:
    """tenacity before_sleep hook."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        f"Save attempt {retry_state.attempt_number} failed: {exc}; "
        f"retrying in {delay:.2f}s"
    )


class SessionController:
    """Active buffer, dirty flag, debounced saves and the optimistic sidebar."""

    def __init__(
        self,
        repository: BufferRepository,
        *,
        debounce_ms: int = 500,
        save_max_attempts: int = 3,
        save_retry_delay_ms: int = 1000,
        flush_timeout_ms: int = 2000,
        welcome_on_first_run: bool = True,
        cleanup_on_start: bool = True,
        executor: Optional[ThreadPoolExecutor] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        on_notice: Optional[Callable[[Notice], None]] = None,
    ):
        self.repository = repository
        self.debounce = debounce_ms / 1000.0
        self.save_max_attempts = save_max_attempts
        self.save_retry_delay = save_retry_delay_ms / 1000.0
        self.flush_timeout = flush_timeout_ms / 1000.0
        self.welcome_on_first_run = welcome_on_first_run
        self.cleanup_on_start = cleanup_on_start
        self.on_notice = on_notice
        self._sleep = sleep or asyncio.sleep
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="scratchpad-io",
        )

        self.state = SessionState.IDLE
        self.active_id: Optional[str] = None
        self.content: str = ""
        self.dirty = False
        self.sidebar: List[BufferSummary] = []
        self.has_more = False
        self.search_results: List[SearchResult] = []
        self.notices: List[Notice] = []

        self._save_lock = asyncio.Lock()
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._active_lost = False
        self._deleting: Set[str] = set()
        self._notice_seq = 0
        self._search_seq = 0

    @classmethod
    def from_config(
        cls, repository: BufferRepository, config, **kwargs: Any,
    ) -> SessionController:
        """Build from a ScratchpadConfig session section."""
        s = config.session
        return cls(
            repository,
            debounce_ms=s.debounce_ms,
            save_max_attempts=s.save_max_attempts,
            save_retry_delay_ms=s.save_retry_delay_ms,
            flush_timeout_ms=s.flush_timeout_ms,
            welcome_on_first_run=s.welcome_on_first_run,
            cleanup_on_start=s.cleanup_on_start,
            **kwargs,
        )

    # -- Plumbing ----------------------------------------------------------

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking repository call on the I/O thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, functools.partial(fn, *args, **kwargs)
        )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _notify(
        self,
        message: str,
        *,
        kind: str = "error",
        retryable: bool = False,
        buffer_id: Optional[str] = None,
    ) -> Notice:
        self._notice_seq += 1
        notice = Notice(
            id=self._notice_seq, message=message, kind=kind,
            retryable=retryable, buffer_id=buffer_id,
        )
        self.notices.append(notice)
        if self.on_notice is not None:
            self.on_notice(notice)
        return notice

    def dismiss(self, notice_id: int) -> bool:
        """Remove a notice.  False if it was already gone."""
        for i, notice in enumerate(self.notices):
            if notice.id == notice_id:
                del self.notices[i]
                return True
        return False

    def _clear_save_notices(self) -> None:
        self.notices = [n for n in self.notices if n.kind != "save_failed"]

    def _find(self, buffer_id: str) -> Optional[int]:
        for i, summary in enumerate(self.sidebar):
            if summary.id == buffer_id:
                return i
        return None

    def _pinned_count(self) -> int:
        return sum(1 for s in self.sidebar if s.is_pinned)

    def _drop_from_sidebar(self, buffer_id: str) -> None:
        index = self._find(buffer_id)
        if index is not None:
            del self.sidebar[index]

    def _activate(self, buffer_id: str, content: str) -> None:
        self.active_id = buffer_id
        self.content = content
        self.dirty = False
        self._active_lost = False
        self.state = SessionState.VIEWING

    def _deactivate(self) -> None:
        self._cancel_debounce()
        self.active_id = None
        self.content = ""
        self.dirty = False
        self._active_lost = False
        self.state = SessionState.IDLE

    # -- Lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Sweep empty buffers, load the first sidebar page and select the top buffer.

        On an empty store the welcome buffer is created first.
        """
        if self.cleanup_on_start:
            removed = await self._call(self.repository.cleanup_empty, None)
            if removed:
                logger.info(f"Startup cleanup removed {removed} empty buffer(s)")
        await self.refresh_sidebar()
        if not self.sidebar and self.welcome_on_first_run:
            await self.create_buffer(WELCOME_CONTENT)
            return
        if self.sidebar:
            await self.select(self.sidebar[0].id)

    async def close(self) -> None:
        """Flush, wait for in-flight writes, and release the I/O thread."""
        self._cancel_debounce()
        if self.dirty:
            await self.flush()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    # -- Sidebar -----------------------------------------------------------

    async def refresh_sidebar(self) -> List[BufferSummary]:
        """Re-fetch the authoritative list (as many rows as are loaded, at least one page)."""
        page_size = self.repository.page_size
        limit = max(len(self.sidebar), page_size)
        rows = await self._call(self.repository.list_page, 0, limit)
        self.sidebar = list(rows)
        self.has_more = len(rows) == limit
        return self.sidebar

    async def load_more(self) -> List[BufferSummary]:
        """Append the next page of the sidebar.  Returns the new entries."""
        if not self.has_more:
            return []
        page_size = self.repository.page_size
        rows = await self._call(self.repository.list_page, len(self.sidebar), page_size)
        known = {s.id for s in self.sidebar}
        added = [s for s in rows if s.id not in known]
        self.sidebar.extend(added)
        self.has_more = len(rows) == page_size
        return added

    # -- Selection and editing --------------------------------------------

    async def select(self, buffer_id: str) -> bool:
        """Make *buffer_id* active, flushing the current buffer first.

        Returns False when the switch did not happen: the flush failed (the
        current buffer stays active and dirty) or the target no longer
        exists (it is dropped from the sidebar).
        """
        if buffer_id == self.active_id and not self._active_lost:
            return True
        if not await self.flush():
            return False
        try:
            content = await self._call(self.repository.get_content, buffer_id)
        except NotFoundError:
            self._drop_from_sidebar(buffer_id)
            self._notify(
                "That buffer no longer exists", kind="not_found", buffer_id=buffer_id,
            )
            return False
        self._activate(buffer_id, content)
        return True

    def edit(self, content: str) -> None:
        """Record new content for the active buffer and (re)start the debounce timer."""
        if self.active_id is None:
            raise RuntimeError("No active buffer to edit")
        self.content = content
        self.dirty = True
        if self.state != SessionState.SAVE_FAILED:
            self.state = SessionState.EDITING
        self._schedule_save()

    def _schedule_save(self) -> None:
        self._cancel_debounce()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self.debounce, self._on_debounce)

    def _cancel_debounce(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

    def _on_debounce(self) -> None:
        self._debounce_handle = None
        self._spawn(self._save_active())

    async def flush(self) -> bool:
        """Save the active buffer now if dirty.  True when nothing is left unsaved."""
        self._cancel_debounce()
        if self._active_lost:
            return False
        return await self._save_active()

    async def on_blur(self) -> bool:
        """Forced flush point with a bounded wait.

        If the save outlives ``flush_timeout`` it keeps running in the
        background and False is returned; the write is never abandoned.
        """
        self._cancel_debounce()
        if not self.dirty or self._active_lost:
            return not self.dirty
        task = self._spawn(self._save_active())
        done, _ = await asyncio.wait({task}, timeout=self.flush_timeout)
        if not done:
            logger.warning(
                f"Blur flush for {self.active_id} exceeded {self.flush_timeout:.1f}s; "
                "save continues in background"
            )
            return False
        return task.result()

    async def _save_with_retry(self, buffer_id: str, content: str) -> Tuple[str, str]:
        result: Tuple[str, str] = ("", "")
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.save_max_attempts),
            wait=wait_incrementing(
                start=self.save_retry_delay, increment=self.save_retry_delay,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                result = await self._call(self.repository.save, buffer_id, content)
        return result

    async def _save_active(self) -> bool:
        async with self._save_lock:
            if self._active_lost:
                return False
            if not self.dirty or self.active_id is None:
                return True
            buffer_id, content = self.active_id, self.content
            self.state = SessionState.SAVING
            try:
                title, preview = await self._save_with_retry(buffer_id, content)
            except NotFoundError:
                if buffer_id != self.active_id or buffer_id in self._deleting:
                    return True
                self._active_lost = True
                self.state = SessionState.SAVE_FAILED
                self._notify(
                    "This buffer was deleted elsewhere; retry to keep your text "
                    "in a new buffer",
                    kind="save_failed", retryable=True, buffer_id=buffer_id,
                )
                return False
            except ScratchpadError as exc:
                logger.error(f"Save failed for {buffer_id}: {exc}")
                if buffer_id == self.active_id:
                    self.state = SessionState.SAVE_FAILED
                    self._notify(
                        f"Could not save: {exc}",
                        kind="save_failed",
                        retryable=not isinstance(exc, ValidationError),
                        buffer_id=buffer_id,
                    )
                return False

            index = self._find(buffer_id)
            if index is not None:
                summary = self.sidebar[index]
                summary.title = title
                summary.preview = preview
                summary.updated_at = max(summary.updated_at, _now_epoch())
            if buffer_id != self.active_id:
                logger.debug(f"Save completed for inactive buffer {buffer_id}")
                return True
            self._clear_save_notices()
            if self.content == content:
                self.dirty = False
                self.state = SessionState.VIEWING
            else:
                self.state = SessionState.EDITING
            return True

    async def retry_save(self) -> bool:
        """Manual retry after SAVE_FAILED.

        When the active buffer was deleted underneath the session, its
        unsaved text is written to a new buffer instead.
        """
        if self._active_lost:
            lost_id = self.active_id
            summary = await self._call(self.repository.create, self.content)
            if lost_id is not None:
                self._drop_from_sidebar(lost_id)
            self.sidebar.insert(self._pinned_count(), summary)
            self._activate(summary.id, self.content)
            self._clear_save_notices()
            logger.info(f"Recovered unsaved text of {lost_id} into {summary.id}")
            return True
        return await self.flush()

    # -- Mutations (optimistic sidebar updates) ----------------------------

    async def create_buffer(self, content: str = "") -> Optional[BufferSummary]:
        """Create a buffer, show it first among unpinned, and make it active.

        Returns None when the current buffer could not be flushed.
        """
        if not await self.flush():
            return None
        summary = await self._call(self.repository.create, content)
        self.sidebar.insert(self._pinned_count(), summary)
        self._activate(summary.id, content)
        return summary

    async def delete_buffer(self, buffer_id: Optional[str] = None) -> Optional[str]:
        """Delete a buffer (the active one by default) and select the next one."""
        target = buffer_id or self.active_id
        if target is None:
            return None
        if target == self.active_id:
            self._cancel_debounce()
        self._deleting.add(target)
        try:
            next_id = await self._call(self.repository.delete, target)
        except NotFoundError:
            next_id = None
            self._notify("That buffer no longer exists", kind="not_found", buffer_id=target)
        finally:
            self._deleting.discard(target)
        self._drop_from_sidebar(target)
        if target == self.active_id:
            self._deactivate()
            if next_id is not None:
                await self.select(next_id)
        return next_id

    async def archive_buffer(self, buffer_id: Optional[str] = None) -> bool:
        """Archive a buffer; an active buffer is flushed first and the next one selected."""
        target = buffer_id or self.active_id
        if target is None:
            return False
        is_active = target == self.active_id
        if is_active and not await self.flush():
            return False
        next_id = resolve_next_active([s.id for s in self.sidebar], target)
        await self._call(self.repository.archive, target)
        self._drop_from_sidebar(target)
        if is_active:
            self._deactivate()
            if next_id is not None:
                await self.select(next_id)
        return True

    async def toggle_pin(self, buffer_id: Optional[str] = None) -> bool:
        """Flip the pin state and re-place the entry: pinned first, unpinned on top."""
        target = buffer_id or self.active_id
        if target is None:
            raise RuntimeError("No buffer to pin")
        pinned = await self._call(self.repository.toggle_pin, target)
        index = self._find(target)
        if index is None:
            return pinned
        if not pinned:
            stored = await self._call(self.repository.get, target)
            index = self._find(target)
            if index is None:
                return pinned
        summary = self.sidebar.pop(index)
        summary.is_pinned = pinned
        if pinned:
            group = sorted(
                [s for s in self.sidebar if s.is_pinned] + [summary],
                key=lambda s: s.seq,
            )
            rest = [s for s in self.sidebar if not s.is_pinned]
            self.sidebar = group + rest
        else:
            summary.sort_order = stored.sort_order
            self.sidebar.insert(self._pinned_count(), summary)
        return pinned

    async def reorder(self, ordered_ids: List[str]) -> bool:
        """Apply a drag-and-drop ordering locally, then persist it.

        On failure the authoritative list is re-fetched.
        """
        pinned = [s for s in self.sidebar if s.is_pinned]
        by_id = {s.id: s for s in self.sidebar if not s.is_pinned}
        unpinned: List[BufferSummary] = []
        for buffer_id in ordered_ids:
            summary = by_id.pop(buffer_id, None)
            if summary is not None:
                unpinned.append(summary)
        unpinned.extend(s for s in self.sidebar if s.id in by_id)
        self.sidebar = pinned + unpinned
        try:
            written = await self._call(self.repository.reorder, ordered_ids)
        except ScratchpadError as exc:
            logger.warning(f"Reorder failed, refreshing sidebar: {exc}")
            self._notify(f"Could not reorder: {exc}", kind="reorder_failed")
            await self.refresh_sidebar()
            return False
        self._renumber_sidebar(written)
        return True

    async def _move(self, buffer_id: Optional[str], up: bool) -> bool:
        target = buffer_id or self.active_id
        if target is None:
            return False
        mover = self.repository.move_up if up else self.repository.move_down
        moved = await self._call(mover, target)
        if not moved:
            return False
        index = self._find(target)
        neighbor = None if index is None else (index - 1 if up else index + 1)
        if neighbor is None or not 0 <= neighbor < len(self.sidebar):
            await self.refresh_sidebar()
            return True
        self.sidebar[index], self.sidebar[neighbor] = (
            self.sidebar[neighbor], self.sidebar[index],
        )
        self._renumber_sidebar([s.id for s in self.sidebar if not s.is_pinned])
        return True

    def _renumber_sidebar(self, unpinned_ids: List[str]) -> None:
        """Copy the store's renumbering onto loaded entries.

        Unpinned entries take their index in *unpinned_ids*, pinned ones
        -k..-1.  Loaded pages are a display-order prefix, so the pinned group
        is complete once an unpinned entry or the last page is loaded.
        """
        pinned = [s for s in self.sidebar if s.is_pinned]
        if len(pinned) < len(self.sidebar) or not self.has_more:
            for position, summary in enumerate(pinned):
                summary.sort_order = position - len(pinned)
        positions = {buffer_id: i for i, buffer_id in enumerate(unpinned_ids)}
        for summary in self.sidebar:
            if not summary.is_pinned and summary.id in positions:
                summary.sort_order = positions[summary.id]

    async def move_up(self, buffer_id: Optional[str] = None) -> bool:
        return await self._move(buffer_id, up=True)

    async def move_down(self, buffer_id: Optional[str] = None) -> bool:
        return await self._move(buffer_id, up=False)

    async def cleanup_empty(self) -> int:
        """Housekeeping sweep; the active buffer is always spared."""
        removed = await self._call(self.repository.cleanup_empty, self.active_id)
        if removed:
            await self.refresh_sidebar()
        return removed

    # -- Search ------------------------------------------------------------

    async def search(self, query: str) -> List[SearchResult]:
        """Run a search; only the latest request updates ``search_results``."""
        self._search_seq += 1
        seq = self._search_seq
        try:
            results = await self._call(self.repository.search, query)
        except ValidationError as exc:
            self._notify(str(exc), kind="validation")
            results = []
        if seq == self._search_seq:
            self.search_results = results
        return results

    def clear_search(self) -> None:
        self._search_seq += 1
        self.search_results = []
