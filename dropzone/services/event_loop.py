"""Dedicated event loop thread for driving the lifecycle manager from sync code."""

import asyncio
import threading
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


class BackgroundLoop:
    """Runs one asyncio loop on a daemon thread.

    Everything that touches a FileLifecycleManager is marshalled onto this
    loop, so the manager only ever sees a single thread.
    """

    def __init__(self, name: str = "dropzone-loop") -> None:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._started = threading.Event()

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(self._started.set)
        self.loop.run_forever()

    def start(self) -> "BackgroundLoop":
        self._thread.start()
        self._started.wait()
        return self

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def run(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        """Run a coroutine on the loop and block until it returns."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def call(self, func: Callable[..., T], *args: Any, timeout: float | None = None) -> T:
        """Call a plain function on the loop thread and return its result."""

        async def invoke() -> T:
            return func(*args)

        return self.run(invoke(), timeout)

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the loop and join the thread."""
        if not self.running:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)
        self.loop.close()
