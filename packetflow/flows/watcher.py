"""Flow config watcher - reloads flow definitions when the YAML file changes."""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from watchfiles import awatch

from ..models import Flow
from .config_loader import load_flows_from_yaml

logger = logging.getLogger(__name__)

FlowsCallback = Callable[[List[Flow]], Awaitable[None]]


class FlowConfigWatcher:
    """
    Watches one flow config file and hands reloaded flows to a callback.

    Usage:
        watcher = FlowConfigWatcher(Path("config/flows.yaml"), on_flows_loaded=save_flows)
        await watcher.start()
    """

    def __init__(
        self,
        config_path: Path,
        on_flows_loaded: Optional[FlowsCallback] = None,
        debounce_ms: int = 500,
    ):
        self.config_path = Path(config_path)
        self.on_flows_loaded = on_flows_loaded
        self.debounce_ms = debounce_ms
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start watching the config file."""
        if self.is_running:
            logger.warning("Flow config watcher is already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._watch())
        logger.info(f"Watching flow config: {self.config_path}")

    async def stop(self) -> None:
        """Stop watching."""
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Flow config watcher stopped")

    async def reload(self) -> List[Flow]:
        """Load the file now and pass the flows to the callback."""
        flows = load_flows_from_yaml(self.config_path)
        if flows and self.on_flows_loaded:
            await self.on_flows_loaded(flows)
        return flows

    async def _watch(self) -> None:
        # Watch the directory; editors often replace the file instead of writing it.
        directory = self.config_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        try:
            async for changes in awatch(
                directory,
                recursive=False,
                debounce=self.debounce_ms,
                stop_event=self._stop_event,
            ):
                if any(Path(path).name == self.config_path.name for _, path in changes):
                    logger.info(f"Flow config changed, reloading: {self.config_path}")
                    await self.reload()
        except asyncio.CancelledError:
            logger.debug("Flow config watch cancelled")
        except Exception as e:
            logger.error(f"Error watching {self.config_path}: {e}", exc_info=True)
