"""Per-bot message queueing, de-duplication and agent dispatch."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from botrelay.models import ReplyTarget, Request, Response, RuntimeEvent, Spec

logger = logging.getLogger(__name__)

BUSY_REPLY = "当前请求较多，请稍后再试。"
TIMEOUT_REPLY = "处理超时，请稍后重试。"
FAILED_REPLY = "处理失败，请稍后重试。"
SEEN_MESSAGE_TTL = 600.0
CLEANUP_INTERVAL = 60.0
WORKER_IDLE_TIMEOUT = SEEN_MESSAGE_TTL
PROCESSING_TIMEOUT = 30.0
REPLY_TIMEOUT = 5.0
DEFAULT_QUEUE_SIZE = 1

_CANCELLATION_ERRORS = (
    TimeoutError,
    concurrent.futures.TimeoutError,
    concurrent.futures.CancelledError,
    asyncio.CancelledError,
)


class _CallContext:
    """The message context value, plus an optional deadline and a cancellation signal.

    ``value`` is whatever the message context function produced. ``deadline`` is
    a ``time.monotonic()`` instant or ``None``. ``wait()`` blocks until the
    deadline passes or the context is cancelled; ``error`` then says which.
    """

    def __init__(self, value: Any, timeout: float) -> None:
        self.value = value
        self.deadline: Optional[float] = None
        self._done = threading.Event()
        self._error: Optional[BaseException] = None
        self._guard = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        if timeout > 0:
            self.deadline = time.monotonic() + timeout
            self._timer = threading.Timer(
                timeout, self._finish, args=(TimeoutError("context deadline exceeded"),)
            )
            self._timer.daemon = True
            self._timer.start()

    def __enter__(self) -> "_CallContext":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def is_done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self) -> None:
        self._finish(concurrent.futures.CancelledError("context canceled"))

    def _finish(self, error: BaseException) -> None:
        with self._guard:
            if self._done.is_set():
                return
            self._error = error
            self._done.set()
        if self._timer is not None:
            self._timer.cancel()


class _Executor(Protocol):
    def send(self, context: _CallContext, bot_id: str, spec: Spec, request: Request) -> Response: ...


class _ReplyGateway(Protocol):
    def reply(self, context: _CallContext, target: ReplyTarget, response: Response) -> None: ...


class _SpecResolver(Protocol):
    def resolve(self, bot_id: str) -> Spec: ...


@dataclass
class InboundMessage:
    bot_id: str = ""
    message_id: str = ""
    sender: str = ""
    text: str = ""
    reply_target: ReplyTarget = field(default_factory=ReplyTarget)
    received_at: Optional[datetime] = None
    context: Any = None


@dataclass
class _Worker:
    cond: threading.Condition
    capacity: int = DEFAULT_QUEUE_SIZE
    queue: deque = field(default_factory=deque)


@dataclass
class _BotState:
    worker: Optional[_Worker] = None
    active: int = 0
    queue_size: int = DEFAULT_QUEUE_SIZE


@dataclass
class _SeenState:
    seen_at: float
    in_progress: bool


class _Admission(Enum):
    ADMITTED = "admitted"
    BUSY = "busy"
    DUPLICATE = "duplicate"


def _is_cancellation(error: BaseException) -> bool:
    return isinstance(error, _CANCELLATION_ERRORS)


class BotMessageOrchestrator:
    """Feeds inbound messages to the agent one at a time per bot and replies.

    Each bot gets a worker thread with a small bounded queue; messages beyond
    it get a busy reply. Message ids are de-duplicated per bot while in
    progress and for a while after success. Executors receive a call context
    carrying the message context value and a processing deadline.
    """

    def __init__(
        self,
        executor: _Executor,
        replies: _ReplyGateway,
        resolver: _SpecResolver,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._bots: dict[str, _BotState] = {}
        self._seen: dict[tuple[str, str], _SeenState] = {}
        self._last_seen_cleanup: Optional[float] = None
        self._executor = executor
        self._replies = replies
        self._resolver = resolver
        self._clock = clock
        self._message_context: Callable[[Any], Any] = lambda context: context
        self._worker_idle_time = WORKER_IDLE_TIMEOUT
        self._processing_timeout = PROCESSING_TIMEOUT
        self._reply_timeout = REPLY_TIMEOUT

    def set_message_context(self, fn: Optional[Callable[[Any], Any]]) -> None:
        """Set the function deriving each message's context from the caller's."""
        if fn is None:
            return
        with self._lock:
            self._message_context = fn

    def set_worker_idle_timeout(self, seconds: float) -> None:
        if seconds > 0:
            with self._lock:
                self._worker_idle_time = seconds

    def set_processing_timeout(self, seconds: float) -> None:
        if seconds > 0:
            with self._lock:
                self._processing_timeout = seconds

    def set_reply_timeout(self, seconds: float) -> None:
        if seconds > 0:
            with self._lock:
                self._reply_timeout = seconds

    def has_bot_state(self, bot_id: str) -> bool:
        with self._lock:
            return bot_id in self._bots

    def active_count(self, bot_id: str) -> int:
        with self._lock:
            state = self._bots.get(bot_id)
            return state.active if state else 0

    def handle_message(self, msg: InboundMessage, context: Any = None) -> None:
        """Queue a message for its bot, replying busy when the queue is full."""
        if not msg.text:
            return
        with self._lock:
            derive = self._message_context
        msg = replace(msg, context=derive(context))
        if self._admit(msg) is _Admission.BUSY:
            call = _CallContext(msg.context, 0)
            try:
                self._reply(call, msg, Response(text=BUSY_REPLY))
            except Exception as exc:
                logger.warning(
                    "busy reply failed: bot_id=%s message_id=%s error=%s", msg.bot_id, msg.message_id, exc
                )
            finally:
                call.cancel()

    def handle_event(self, event: RuntimeEvent, context: Any = None) -> None:
        self.handle_message(
            InboundMessage(
                bot_id=event.bot_id,
                message_id=event.message_id,
                sender=event.sender,
                text=event.text,
                reply_target=event.reply_target,
            ),
            context,
        )

    def _admit(self, msg: InboundMessage) -> _Admission:
        now = self._clock()
        with self._lock:
            if self._last_seen_cleanup is None or now - self._last_seen_cleanup >= CLEANUP_INTERVAL:
                self._cleanup_seen_locked(now)

            state = self._bots.setdefault(msg.bot_id, _BotState())
            key = (msg.bot_id, msg.message_id) if msg.message_id else None
            if key is not None and key in self._seen:
                seen = self._seen[key]
                if seen.in_progress or now - seen.seen_at < SEEN_MESSAGE_TTL:
                    return _Admission.DUPLICATE

            worker = state.worker
            if worker is None:
                worker = _Worker(cond=threading.Condition(self._lock))
                worker.queue.append(msg)
                state.worker = worker
                threading.Thread(
                    target=self._run_worker,
                    args=(msg.bot_id, worker),
                    name=f"bot-worker-{msg.bot_id}",
                    daemon=True,
                ).start()
            elif len(worker.queue) >= worker.capacity:
                return _Admission.BUSY
            else:
                worker.queue.append(msg)
                worker.cond.notify()

            if key is not None:
                self._seen[key] = _SeenState(seen_at=now, in_progress=True)
            return _Admission.ADMITTED

    def _run_worker(self, bot_id: str, worker: _Worker) -> None:
        with self._lock:
            idle_for = self._worker_idle_time
        while True:
            with self._lock:
                if not worker.cond.wait_for(lambda: worker.queue, timeout=idle_for):
                    if self._reclaim_locked(bot_id, worker):
                        return
                    continue
                msg = worker.queue.popleft()
            try:
                self._process_message(bot_id, msg)
            except Exception:
                logger.exception("message processing crashed: bot_id=%s message_id=%s", bot_id, msg.message_id)

    def _reclaim_locked(self, bot_id: str, worker: _Worker) -> bool:
        state = self._bots.get(bot_id)
        if state is None or state.worker is not worker:
            return True
        if state.active > 0 or worker.queue:
            return False
        del self._bots[bot_id]
        return True

    def _process_message(self, bot_id: str, msg: InboundMessage) -> None:
        self._mark_started(msg)
        try:
            spec = self._resolver.resolve(bot_id)
        except Exception as exc:
            logger.warning("resolver failed: bot_id=%s message_id=%s error=%s", msg.bot_id, msg.message_id, exc)
            self._reply_with_timeout(msg, Response(text=FAILED_REPLY))
            self._finish_message(msg, succeeded=False)
            return

        queue_size = spec.queue_size if spec.queue_size > 0 else DEFAULT_QUEUE_SIZE
        self._resize_worker_queue(bot_id, queue_size)

        with self._processing_context(msg.context, spec.timeout) as context:
            response, error = self._send(context, msg, spec)
            if error is None:
                self._reply_with_timeout(msg, response)
                self._finish_message(msg, succeeded=True)
                return

            logger.warning("agent send failed: bot_id=%s message_id=%s error=%s", msg.bot_id, msg.message_id, error)
            reply_text = FAILED_REPLY
            partial = getattr(error, "response", None)
            if _is_cancellation(error):
                reply_text = TIMEOUT_REPLY
            elif isinstance(partial, Response) and partial.runtime_type and partial.text.strip():
                reply_text = f"{partial.runtime_type}: {partial.text.strip()}"
            self._reply_with_timeout(msg, Response(text=reply_text))
            self._finish_message(msg, succeeded=False)

    def _send(
        self, context: _CallContext, msg: InboundMessage, spec: Spec
    ) -> tuple[Response, Optional[BaseException]]:
        outcome: dict[str, Any] = {}
        finished = threading.Event()
        request = Request(bot_id=msg.bot_id, user_id=msg.sender, message_id=msg.message_id, prompt=msg.text)

        def run() -> None:
            try:
                outcome["response"] = self._executor.send(context, msg.bot_id, spec, request)
            except Exception as exc:
                outcome["error"] = exc
            finally:
                finished.set()

        threading.Thread(target=run, name=f"agent-send-{msg.bot_id}", daemon=True).start()
        if not finished.wait(context.remaining()):
            logger.warning("processing timeout: bot_id=%s message_id=%s", msg.bot_id, msg.message_id)
            return Response(), context.error or TimeoutError("context deadline exceeded")
        return outcome.get("response") or Response(), outcome.get("error")

    def _processing_context(self, value: Any, min_timeout: float) -> _CallContext:
        with self._lock:
            timeout = self._processing_timeout
        return _CallContext(value, max(timeout, min_timeout))

    def _reply(self, context: _CallContext, msg: InboundMessage, response: Response) -> None:
        target = replace(msg.reply_target, metadata=dict(msg.reply_target.metadata or {}))
        if not target.recipient_id:
            target.recipient_id = msg.sender
        self._replies.reply(context, target, response)

    def _reply_with_timeout(self, msg: InboundMessage, response: Response) -> None:
        with self._lock:
            timeout = self._reply_timeout
        done = threading.Event()
        with _CallContext(msg.context, timeout) as context:

            def run() -> None:
                logger.info(
                    "bot reply sending: bot_id=%s message_id=%s text=%r", msg.bot_id, msg.message_id, response.text
                )
                try:
                    self._reply(context, msg, response)
                except Exception as exc:
                    logger.warning(
                        "bot reply failed: bot_id=%s message_id=%s error=%s", msg.bot_id, msg.message_id, exc
                    )
                finally:
                    done.set()

            threading.Thread(target=run, name=f"bot-reply-{msg.bot_id}", daemon=True).start()
            done.wait(context.remaining())

    def _resize_worker_queue(self, bot_id: str, queue_size: int) -> None:
        with self._lock:
            state = self._bots.get(bot_id)
            if state is None:
                return
            state.queue_size = queue_size
            if state.worker is not None:
                state.worker.capacity = queue_size

    def _mark_started(self, msg: InboundMessage) -> None:
        with self._lock:
            state = self._bots.get(msg.bot_id)
            if state is not None:
                state.active += 1

    def _finish_message(self, msg: InboundMessage, succeeded: bool) -> None:
        now = self._clock()
        with self._lock:
            state = self._bots.get(msg.bot_id)
            if state is None:
                return
            if not msg.message_id:
                if state.active > 0:
                    state.active -= 1
                return
            key = (msg.bot_id, msg.message_id)
            seen = self._seen.get(key)
            if seen is None or not seen.in_progress:
                return
            if state.active > 0:
                state.active -= 1
            if succeeded:
                self._seen[key] = _SeenState(seen_at=now, in_progress=False)
            else:
                del self._seen[key]

    def _cleanup_seen_locked(self, now: float) -> None:
        self._seen = {
            key: seen
            for key, seen in self._seen.items()
            if seen.in_progress or now - seen.seen_at < SEEN_MESSAGE_TTL
        }
        self._last_seen_cleanup = now