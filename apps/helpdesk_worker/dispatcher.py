"""One bounded pass over the outbox.

Claims up to ``max_events`` events one at a time, runs the registered handler
for each with a per-call timeout, then marks it processed or deferred. Events
are handled serially so events of one ticket go out in enqueue order.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from apps.helpdesk_backend.outbox import ClaimedEvent, claim_next, mark_failure, mark_success
from apps.helpdesk_worker.handlers import HANDLERS, HandlerContext, default_context
from common_core.config import settings
from common_core.db import SessionLocal

log = logging.getLogger("helpdesk.dispatcher")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class BatchResult:
    processed: int
    errors: int


def _run_with_timeout(handler, ctx: HandlerContext, ev: ClaimedEvent, timeout: float) -> None:
    # A handler still running at the deadline keeps its thread; the event is
    # deferred and may be redelivered while it finishes.
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"outbox-{ev.id}")
    try:
        pool.submit(handler, ctx, ev).result(timeout=timeout)
    finally:
        pool.shutdown(wait=False)


def run_dispatcher_batch(
    max_events: Optional[int] = None,
    *,
    session_factory=None,
    handlers: Optional[dict[str, Callable]] = None,
    ctx: Optional[HandlerContext] = None,
    clock: Optional[Callable[[], datetime]] = None,
    timeout: Optional[float] = None,
) -> BatchResult:
    max_events = settings.dispatcher_max_events if max_events is None else max_events
    session_factory = session_factory or SessionLocal
    handlers = HANDLERS if handlers is None else handlers
    ctx = ctx or default_context(session_factory)
    clock = clock or _utcnow
    timeout = settings.handler_timeout_seconds if timeout is None else timeout

    processed = 0
    errors = 0
    for _ in range(max_events):
        ev = claim_next(session_factory=session_factory, now=clock())
        if ev is None:
            break
        processed += 1

        handler = handlers.get(ev.event_type)
        if handler is None:
            errors += 1
            log.error("outbox_unknown_event_type", extra={"event_id": ev.id, "event_type": ev.event_type})
            mark_failure(
                ev.id,
                f"no handler for event type {ev.event_type!r}",
                session_factory=session_factory,
                now=clock(),
            )
            continue

        try:
            _run_with_timeout(handler, ctx, ev, timeout)
        except FutureTimeout:
            errors += 1
            mark_failure(
                ev.id,
                f"handler timed out after {timeout:g}s",
                session_factory=session_factory,
                now=clock(),
            )
            continue
        except Exception as e:
            errors += 1
            log.exception("outbox_handler_failed", extra={"event_id": ev.id, "event_type": ev.event_type})
            mark_failure(ev.id, f"{type(e).__name__}: {e}", session_factory=session_factory, now=clock())
            continue

        mark_success(ev.id, session_factory=session_factory, now=clock())
        log.info("outbox_event_processed", extra={"event_id": ev.id, "event_type": ev.event_type, "attempts": ev.attempts})

    if processed:
        log.info("outbox_batch_done", extra={"count": processed, "err": errors or None})
    return BatchResult(processed=processed, errors=errors)
