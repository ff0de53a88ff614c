"""
Manual ordering of buffers.

Display order is: pinned buffers first (in insertion order), then unpinned
buffers by ascending ``sort_order``, newest insertion first on ties.  Only
unpinned, non-archived buffers take part in manual ordering.

The functions here are pure planners: they take the *current* id lists as
read inside a write transaction and return the target state.  The
repository writes the plan in that same transaction, so a reorder can never
interleave with a create or delete of the buffers it touches.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

UP = "up"
DOWN = "down"

# SQL ORDER BY clause implementing the display order above.
DISPLAY_ORDER_SQL = (
    "is_pinned DESC, "
    "CASE WHEN is_pinned = 1 THEN seq END ASC, "
    "sort_order ASC, seq DESC"
)


def next_sort_order(current_min: Optional[int]) -> int:
    """sort_order for a newly created (or restored/unpinned) buffer: first among unpinned."""
    if current_min is None:
        return 0
    return current_min - 1


def plan_reorder(
    current_ids: List[str], requested_ids: Iterable[str],
) -> Tuple[List[str], List[str]]:
    """Merge a client-supplied ordering with the authoritative id list.

    Args:
        current_ids: Unpinned live buffer ids in current display order.
        requested_ids: The ordering the client asked for.

    Returns:
        ``(target, discarded)``.  ``target`` holds every id of
        ``current_ids`` exactly once: the requested ids that still exist,
        in requested order, followed by any the client omitted in their
        current relative order.  ``discarded`` lists requested ids that
        are stale, pinned or duplicated.
    """
    live = set(current_ids)
    seen = set()
    target: List[str] = []
    discarded: List[str] = []
    for buffer_id in requested_ids:
        if buffer_id in live and buffer_id not in seen:
            target.append(buffer_id)
            seen.add(buffer_id)
        else:
            discarded.append(buffer_id)
    target.extend(bid for bid in current_ids if bid not in seen)
    return target, discarded


def assign_sort_orders(ordered_ids: List[str]) -> List[Tuple[int, str]]:
    """Sequential (sort_order, id) pairs, 0..n-1, ready for executemany."""
    return [(index, buffer_id) for index, buffer_id in enumerate(ordered_ids)]


def assign_pinned_sort_orders(pinned_ids: List[str]) -> List[Tuple[int, str]]:
    """(sort_order, id) pairs -k..-1 for the k pinned buffers, in seq order.

    Pinned values stay below the unpinned range 0..n-1.
    """
    start = -len(pinned_ids)
    return [(start + index, buffer_id) for index, buffer_id in enumerate(pinned_ids)]


def plan_move(
    current_ids: List[str], buffer_id: str, direction: str,
) -> Optional[List[str]]:
    """Swap *buffer_id* with its unpinned neighbor.

    Returns the new unpinned order, or None when the move is a no-op: the
    buffer is not among the unpinned ids, or it is already first (the slot
    above is a pinned buffer or nothing) or last.
    """
    if direction not in (UP, DOWN):
        raise ValueError(f"Invalid direction: {direction!r} (expected 'up' or 'down')")
    try:
        index = current_ids.index(buffer_id)
    except ValueError:
        return None
    neighbor = index - 1 if direction == UP else index + 1
    if neighbor < 0 or neighbor >= len(current_ids):
        return None
    target = list(current_ids)
    target[index], target[neighbor] = target[neighbor], target[index]
    return target


def resolve_next_active(display_ids: List[str], deleted_id: str) -> Optional[str]:
    """Buffer to activate after deleting *deleted_id*.

    Prefers the buffer immediately before it in display order, then the one
    immediately after, else None.
    """
    try:
        index = display_ids.index(deleted_id)
    except ValueError:
        return None
    if index > 0:
        return display_ids[index - 1]
    if index + 1 < len(display_ids):
        return display_ids[index + 1]
    return None
