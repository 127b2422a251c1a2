import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)


class EventSubscription:
    """
    One long-lived watch over a contract event

    Owns a polling log filter and the asyncio task that drains it. Each
    non-empty batch is awaited by the handler before the next poll, so logs of
    one subscription are handled strictly in delivery order. Blocking RPC
    calls run in the default executor and never stall other subscriptions.
    """

    def __init__(
        self,
        name: str,
        install: Callable[[], Any],
        uninstall: Callable[[Any], Any],
        on_logs: Callable[[List[Any]], Awaitable[None]],
        poll_interval: float = 4.0,
    ):
        self.name = name
        self.install = install
        self.uninstall = uninstall
        self.on_logs = on_logs
        self.poll_interval = poll_interval
        self.last_error: Optional[str] = None
        self.batches_handled = 0
        self._filter = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._filter = await loop.run_in_executor(None, self.install)
        self._task = asyncio.create_task(self._poll(), name=f"subscription:{self.name}")
        logger.info(f"Watching {self.name} every {self.poll_interval}s")

    async def _poll(self):
        loop = asyncio.get_running_loop()
        while True:
            try:
                entries = await loop.run_in_executor(None, self._filter.get_new_entries)
                if entries:
                    await self.on_logs(list(entries))
                    self.batches_handled += 1
            except Exception as e:
                self.last_error = str(e)
                logger.error(f"{self.name} watcher error: {e}")
                if "filter not found" in str(e).lower():
                    await self._reinstall()
            await asyncio.sleep(self.poll_interval)

    async def _reinstall(self):
        loop = asyncio.get_running_loop()
        try:
            self._filter = await loop.run_in_executor(None, self.install)
            logger.warning(f"{self.name} filter expired on the node; reinstalled")
        except Exception as e:
            logger.error(f"Failed to reinstall {self.name} filter: {e}")

    async def stop(self):
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        event_filter, self._filter = self._filter, None
        if event_filter is not None:
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self.uninstall, event_filter)
            except Exception as e:
                logger.warning(f"Failed to uninstall {self.name} filter: {e}")
        logger.info(f"Stopped watching {self.name}")
