"""
EngineManager -- owner of the single shared rendering engine.

Responsibility:
    Lazily starts one headless rendering engine, hands it out as leases to
    concurrent ``to_pdf`` callers and tears it down on shutdown.  Starting
    an engine is expensive, so it is reused across calls; each call works
    in its own isolated page.

Architecture position:
    Services -- infrastructure resource manager.  Injected into
    ``PdfRenderer``; tests inject a fake engine factory.

Concurrency:
    The engine is driven through an asyncio API on one dedicated
    event-loop thread, so every engine object lives on the thread that
    created it.  Request threads submit coroutines with ``call`` and block
    on the result.  Each call runs as its own task: pages progress side by
    side, and a phase timeout (``asyncio.wait_for``) cancels only the task
    that overran.  A stuck page never delays another caller.

Invariants enforced:
    - At most one engine is cached at a time.  The cached reference is
      replaced only under ``_lock`` with a test-and-clear, so two callers
      that both see a dead engine never double-close or double-start.
    - A disconnected engine is discarded, never closed.
    - A live engine is never closed while leased; ``dispose`` during
      active leases defers the close to the last release.

Failure modes:
    - RenderFailedError(phase="startup"|"load"|"capture") for timeouts and
      engine errors; the original exception is chained as ``__cause__``.
"""

from __future__ import annotations

import asyncio
import atexit
import signal
import threading
from collections.abc import Awaitable, Callable, Coroutine, Iterator
from concurrent.futures import Future
from contextlib import contextmanager
from typing import Any, Protocol, TypeVar, runtime_checkable

from deal_kernel.exceptions import RenderFailedError
from deal_kernel.logging_config import get_logger

logger = get_logger("services.pdf_engine")

T = TypeVar("T")

# Extra wait on the caller's side after the in-loop timeout has fired.
_GRACE = 1.0


@runtime_checkable
class RenderingPage(Protocol):
    async def set_content(self, html: str, timeout_ms: float) -> None: ...

    async def pdf(self, page_format: str, margin: str) -> bytes: ...

    async def close(self) -> None: ...


@runtime_checkable
class RenderingEngine(Protocol):
    def is_connected(self) -> bool: ...

    async def new_page(self) -> RenderingPage: ...

    async def close(self) -> None: ...


EngineFactory = Callable[[], Awaitable[RenderingEngine]]


class EngineManager:
    """
    Reference-counted holder of the shared rendering engine.

    Usage:
        manager = EngineManager(PlaywrightEngine.launch, startup_timeout=10)
        with manager.lease() as engine:
            page = manager.call(engine.new_page, timeout=15, phase="load")
    """

    def __init__(self, factory: EngineFactory, startup_timeout: float = 10.0):
        self._factory = factory
        self._startup_timeout = startup_timeout
        self._lock = threading.Lock()
        self._engine: RenderingEngine | None = None
        self._retired: RenderingEngine | None = None
        self._leases = 0
        self._disposed = False
        self._background: set[asyncio.Task] = set()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever, name="render-engine", daemon=True
        )
        self._thread.start()

    # =========================================================================
    # Leasing
    # =========================================================================

    @contextmanager
    def lease(self) -> Iterator[RenderingEngine]:
        """Borrow the shared engine, starting it if needed."""
        engine = self._acquire()
        try:
            yield engine
        finally:
            self._release(engine)

    def call(
        self, fn: Callable[..., Awaitable[T]], *args: Any, timeout: float, phase: str
    ) -> T:
        """Run ``fn(*args)`` on the engine loop, bounded by ``timeout`` seconds."""
        future = self._run(asyncio.wait_for(fn(*args), timeout))
        try:
            return future.result(timeout=timeout + _GRACE)
        except TimeoutError:
            future.cancel()
            logger.warning(
                "render_phase_timeout", extra={"phase": phase, "timeout_s": timeout}
            )
            raise RenderFailedError(phase, f"timed out after {timeout}s") from None
        except RenderFailedError:
            raise
        except Exception as exc:
            raise RenderFailedError(phase, f"{type(exc).__name__}: {exc}") from exc

    def submit(self, fn: Callable[[], Awaitable[Any]], effect: str) -> None:
        """Schedule ``fn()`` on the engine loop without waiting for it."""
        try:
            future = self._run(fn())
        except RenderFailedError:
            return
        future.add_done_callback(lambda f: _log_failure(f, effect))

    def _acquire(self) -> RenderingEngine:
        with self._lock:
            if self._disposed:
                raise RenderFailedError("startup", "rendering engine has been shut down")

            engine = self._engine
            if engine is not None and not self._is_connected(engine):
                logger.warning("engine_discarded", extra={"reason": "disconnected"})
                self._engine = engine = None

            if engine is None:
                engine = self._start()
                self._engine = engine

            self._leases += 1
            return engine

    def _release(self, engine: RenderingEngine) -> None:
        with self._lock:
            self._leases -= 1
            retired = self._retired if self._leases == 0 else None
            if retired is not None:
                self._retired = None
        if retired is not None:
            self._close(retired)
            self._stop_loop()

    # =========================================================================
    # Health and teardown
    # =========================================================================

    def discard_if_dead(self, engine: RenderingEngine) -> bool:
        """
        Drop the cached reference when ``engine`` has disconnected.

        Called after a failed render.  Only clears the cache if it still
        holds this same engine.

        Returns:
            True if the engine was discarded.
        """
        if self._is_connected(engine):
            return False
        with self._lock:
            if self._engine is engine:
                self._engine = None
                logger.warning("engine_discarded", extra={"reason": "disconnected_during_render"})
                return True
        return False

    def health_check(self) -> bool:
        """True when an engine is cached and still connected."""
        with self._lock:
            engine = self._engine
        return engine is not None and self._is_connected(engine)

    @property
    def active_leases(self) -> int:
        return self._leases

    @property
    def is_started(self) -> bool:
        return self._engine is not None

    def dispose(self) -> None:
        """Shut the engine down. Safe to call more than once."""
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            engine, self._engine = self._engine, None
            if engine is not None and self._leases > 0:
                self._retired = engine
                engine = None
                deferred = True
            else:
                deferred = False

        if deferred:
            logger.info("engine_close_deferred", extra={"active_leases": self._leases})
            return
        if engine is not None:
            self._close(engine)
        self._stop_loop()
        logger.info("engine_manager_disposed")

    # =========================================================================
    # Internal
    # =========================================================================

    def _run(self, coro: Coroutine[Any, Any, T]) -> Future[T]:
        try:
            return asyncio.run_coroutine_threadsafe(coro, self._loop)
        except RuntimeError:
            coro.close()
            raise RenderFailedError("startup", "rendering engine has been shut down") from None

    def _start(self) -> RenderingEngine:
        future = self._run(self._launch())
        try:
            engine = future.result(timeout=self._startup_timeout + _GRACE)
        except TimeoutError:
            future.cancel()
            logger.warning(
                "engine_start_timeout", extra={"timeout_s": self._startup_timeout}
            )
            raise RenderFailedError(
                "startup", f"engine did not start within {self._startup_timeout}s"
            ) from None
        except Exception as exc:
            logger.error("engine_start_failed", extra={"error": str(exc)})
            raise RenderFailedError("startup", f"{type(exc).__name__}: {exc}") from exc
        logger.info("engine_started")
        return engine

    async def _launch(self) -> RenderingEngine:
        task = asyncio.ensure_future(self._factory())
        done, _ = await asyncio.wait({task}, timeout=self._startup_timeout)
        if not done:
            # Nobody will lease a late engine; close it once it arrives.
            self._background.add(task)
            task.add_done_callback(self._close_abandoned)
            raise TimeoutError
        return task.result()

    def _close_abandoned(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled() or task.exception() is not None:
            return
        closer = asyncio.ensure_future(_close_quietly(task.result(), "engine_abandoned_closed"))
        self._background.add(closer)
        closer.add_done_callback(self._background.discard)

    def _is_connected(self, engine: RenderingEngine) -> bool:
        async def probe() -> bool:
            return engine.is_connected()

        try:
            return bool(self._run(probe()).result(timeout=self._startup_timeout))
        except TimeoutError:
            # Loop too busy to answer; no evidence the engine is gone.
            return True
        except Exception:
            logger.warning("engine_health_probe_failed", exc_info=True)
            return False

    def _close(self, engine: RenderingEngine) -> None:
        try:
            self._run(_close_quietly(engine, "engine_closed")).result(
                timeout=self._startup_timeout
            )
        except Exception:
            logger.warning("engine_close_failed", exc_info=True)

    def _stop_loop(self) -> None:
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=self._startup_timeout)
        if not self._thread.is_alive():
            self._loop.close()


async def _close_quietly(engine: RenderingEngine, event: str) -> None:
    try:
        await engine.close()
        logger.info(event)
    except Exception:
        logger.warning("engine_close_failed", exc_info=True)


def _log_failure(future: Future, effect: str) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning(
            "engine_task_failed", extra={"effect": effect, "error": str(exc)}
        )


def install_shutdown_hooks(manager: EngineManager) -> None:
    """
    Dispose ``manager`` at interpreter exit and on SIGTERM.

    The signal handler is only installed from the main thread; a
    previously installed handler is chained.
    """
    atexit.register(manager.dispose)

    if threading.current_thread() is not threading.main_thread():
        return

    previous = signal.getsignal(signal.SIGTERM)

    def _on_sigterm(signum: int, frame: Any) -> None:
        manager.dispose()
        if callable(previous):
            previous(signum, frame)
        else:
            raise SystemExit(128 + signum)

    signal.signal(signal.SIGTERM, _on_sigterm)
