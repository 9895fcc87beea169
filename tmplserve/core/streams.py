"""Thread-backed streams that let a template pull rows lazily.

A background worker produces items into a `Channel`; the rendering thread
consumes them through a `Stream`, which is an ordinary single-use iterator.
Every channel is bound to a `CancelToken` carrying an optional deadline, and
tokens created inside a `render_scope()` are cancelled when the scope exits,
so no worker outlives the render pass that started it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Generic, Iterable, Iterator, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")


class CancelToken:
    """Cancellation flag with an optional one-shot deadline."""

    def __init__(self, timeout: float | None = None) -> None:
        self._deadline = None if timeout is None else time.monotonic() + timeout
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def cancelled(self) -> bool:
        return self._cancelled or self.expired

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def discard(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass


class RenderScope:
    """Collects the tokens created during one render pass."""

    def __init__(self) -> None:
        self._tokens: list[CancelToken] = []
        self._lock = threading.Lock()

    def track(self, token: CancelToken) -> None:
        with self._lock:
            self._tokens.append(token)

    def cancel(self) -> int:
        with self._lock:
            tokens = list(self._tokens)
            self._tokens.clear()
        for token in tokens:
            token.cancel()
        return len(tokens)


_CURRENT_SCOPE: ContextVar[RenderScope | None] = ContextVar("tmplserve_render_scope", default=None)


@contextmanager
def render_scope() -> Iterator[RenderScope]:
    """Cancel every stream opened inside the block once the block exits."""

    scope = RenderScope()
    reset = _CURRENT_SCOPE.set(scope)
    try:
        yield scope
    finally:
        _CURRENT_SCOPE.reset(reset)
        cancelled = scope.cancel()
        if cancelled:
            LOGGER.debug("Render scope released %s stream token(s)", cancelled)


def new_token(timeout: float | None = None) -> CancelToken:
    """Return a token tracked by the active render scope, if any."""

    token = CancelToken(timeout)
    scope = _CURRENT_SCOPE.get()
    if scope is not None:
        scope.track(token)
    return token


_CLOSED = object()


class Channel(Generic[T]):
    """Bounded hand-off between one producer thread and one consumer."""

    def __init__(self, token: CancelToken, capacity: int = 1) -> None:
        if capacity < 1:
            raise ValueError("Channel capacity must be at least 1")
        self.token = token
        self._capacity = capacity
        self._items: deque[T] = deque()
        self._closed = False
        self._cond = threading.Condition()
        token.on_cancel(self._wake)

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def send(self, item: T) -> bool:
        """Queue *item*, blocking while full; False once the token gives up."""

        with self._cond:
            while True:
                if self._closed or self.token.cancelled:
                    return False
                if len(self._items) < self._capacity:
                    break
                self._cond.wait(self.token.remaining())
            self._items.append(item)
            self._cond.notify_all()
            return True

    def receive(self) -> Any:
        """Return the next item, or the module's closed marker at end of stream."""

        with self._cond:
            while not self._items:
                if self._closed:
                    return _CLOSED
                self._cond.wait()
            item = self._items.popleft()
            self._cond.notify_all()
            return item

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self.token.discard(self._wake)

    @property
    def closed(self) -> bool:
        return self._closed


class Stream(Generic[T]):
    """Single-use iterator over the items of a channel."""

    def __init__(self, channel: Channel[T]) -> None:
        self._channel = channel
        self._done = False

    @property
    def token(self) -> CancelToken:
        return self._channel.token

    def __iter__(self) -> Stream[T]:
        return self

    def __next__(self) -> T:
        if self._done:
            raise StopIteration
        item = self._channel.receive()
        if item is _CLOSED:
            self._done = True
            raise StopIteration
        return item

    def cancel(self) -> None:
        """Stop the workers feeding this stream (and any stream sharing its token)."""

        self.token.cancel()

    def __enter__(self) -> Stream[T]:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()

    def __repr__(self) -> str:
        state = "done" if self._done else "open"
        return f"<Stream {state}>"


def spawn(target: Callable[[], None], name: str) -> threading.Thread:
    thread = threading.Thread(target=target, name=name, daemon=True)
    thread.start()
    return thread


def token_for(source: Iterable[Any]) -> CancelToken:
    """Return the token of *source* when it is a stream, else a fresh one."""

    if isinstance(source, Stream):
        return source.token
    return new_token()


def relay(source: Iterable[T], transform: Callable[[T], U], *, name: str = "relay") -> Stream[U]:
    """Map *source* into a new stream on a background worker."""

    channel: Channel[U] = Channel(token_for(source))

    def run() -> None:
        try:
            for item in source:
                if not channel.send(transform(item)):
                    break
        except Exception:
            LOGGER.exception("Relay worker %s failed", name)
            channel.token.cancel()
        finally:
            channel.close()

    spawn(run, name=f"tmplserve-{name}")
    return Stream(channel)
