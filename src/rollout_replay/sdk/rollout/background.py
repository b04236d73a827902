"""
Background sending for rollout session updates.

Span updates are reported to the tracker without ever blocking the traced
code. Coroutines are submitted to a dedicated event loop running in a daemon
thread with `asyncio.run_coroutine_threadsafe()`, so they can be scheduled
from any thread, sync or async, and from span processor callbacks that have
no running loop.

Pending sends are tracked and awaited at program exit, so updates issued just
before the agent finishes are not dropped. `wait_for_pending_sends` does the
same on demand.
"""

import asyncio
import atexit
import concurrent.futures
import threading
from typing import Any, Callable, Coroutine

from rollout_replay.sdk.log import get_default_logger

logger = get_default_logger(__name__)

# Timeout for waiting for each async send operation at exit
ASYNC_SEND_TIMEOUT_SECONDS = 30

# Timeout for background loop creation
LOOP_CREATION_TIMEOUT_SECONDS = 5

# Timeout for thread join during cleanup
THREAD_JOIN_TIMEOUT_SECONDS = 5

_background_loop: asyncio.AbstractEventLoop | None = None
_background_loop_thread: threading.Thread | None = None
_background_loop_lock = threading.Lock()
_background_loop_ready = threading.Event()
_pending_async_futures: set[concurrent.futures.Future[Any]] = set()
_shutdown_hooks: list[Callable[[], Coroutine[Any, Any, Any]]] = []


def get_background_loop() -> asyncio.AbstractEventLoop:
    """
    Get or create the background event loop for async sends.

    Creates a dedicated event loop running in a daemon thread on first call.
    Subsequent calls return the same loop. Thread-safe.
    """
    global _background_loop, _background_loop_thread

    with _background_loop_lock:
        if _background_loop_thread is None:

            def run_loop():
                global _background_loop
                _background_loop = asyncio.new_event_loop()
                asyncio.set_event_loop(_background_loop)
                _background_loop_ready.set()
                _background_loop.run_forever()

            _background_loop_thread = threading.Thread(
                target=run_loop, daemon=True, name="rollout-async-sends"
            )
            _background_loop_thread.start()

            atexit.register(_cleanup_background_loop)

    # Wait outside the lock to avoid blocking other threads
    if not _background_loop_ready.wait(timeout=LOOP_CREATION_TIMEOUT_SECONDS):
        raise RuntimeError("Background loop creation timed out")

    return _background_loop


def track_async_send(future: concurrent.futures.Future) -> None:
    """
    Track an async send future until it completes.

    Args:
        future: The future returned by asyncio.run_coroutine_threadsafe()
    """
    with _background_loop_lock:
        _pending_async_futures.add(future)

    def remove_on_done(f):
        with _background_loop_lock:
            _pending_async_futures.discard(f)

    future.add_done_callback(remove_on_done)


def submit(coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future:
    """Schedule a coroutine on the background loop and track it."""
    future = asyncio.run_coroutine_threadsafe(coro, get_background_loop())
    track_async_send(future)
    return future


def wait_for_pending_sends(timeout: float = ASYNC_SEND_TIMEOUT_SECONDS) -> bool:
    """
    Block until every send tracked so far has completed.

    Errors of individual sends are logged at debug level and do not stop the
    wait.

    Returns:
        bool: False if the timeout expired with sends still pending
    """
    with _background_loop_lock:
        futures_to_wait = list(_pending_async_futures)

    if not futures_to_wait:
        return True

    done, not_done = concurrent.futures.wait(futures_to_wait, timeout=timeout)
    for future in done:
        if future.cancelled():
            continue
        if (e := future.exception()) is not None:
            logger.debug(f"Error in async send: {e}")
    return not not_done


def register_shutdown_hook(hook: Callable[[], Coroutine[Any, Any, Any]]) -> None:
    """Run `hook()` on the background loop at exit, before the loop stops."""
    with _background_loop_lock:
        _shutdown_hooks.append(hook)


def _run_shutdown_hooks(loop: asyncio.AbstractEventLoop) -> None:
    with _background_loop_lock:
        hooks = list(_shutdown_hooks)
        _shutdown_hooks.clear()

    for hook in hooks:
        try:
            asyncio.run_coroutine_threadsafe(hook(), loop).result(
                timeout=THREAD_JOIN_TIMEOUT_SECONDS
            )
        except Exception as e:
            logger.debug(f"Error in background loop shutdown hook: {e}")


def _cleanup_background_loop():
    """
    Wait for all pending sends, run the shutdown hooks, then stop the
    background loop.

    Called automatically at program exit via atexit.
    """
    with _background_loop_lock:
        futures_to_wait = list(_pending_async_futures)

    if futures_to_wait:
        logger.info(
            f"Finishing sending {len(futures_to_wait)} rollout span updates... "
            "Ctrl+C to cancel (may result in an incomplete rollout session)."
        )

        for future in futures_to_wait:
            try:
                future.result(timeout=ASYNC_SEND_TIMEOUT_SECONDS)
            except concurrent.futures.TimeoutError:
                logger.debug("Timeout waiting for async send to complete")
            except KeyboardInterrupt:
                logger.debug("Interrupted, cancelling pending async sends")
                for f in futures_to_wait:
                    f.cancel()
                raise
            except Exception as e:
                logger.debug(f"Error in async send: {e}")

    if _background_loop is not None and not _background_loop.is_closed():
        try:
            _run_shutdown_hooks(_background_loop)
            _background_loop.call_soon_threadsafe(_background_loop.stop)
            if _background_loop_thread is not None:
                _background_loop_thread.join(timeout=THREAD_JOIN_TIMEOUT_SECONDS)
        except Exception as e:
            logger.debug(f"Error stopping background loop: {e}")
