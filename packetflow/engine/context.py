"""Execution context - what a handler sees while one flow step runs."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import aiofiles
import aiofiles.os
import logging
import traceback

from ..storage import ProcessedItemStore

logger = logging.getLogger(__name__)


@dataclass
class FileWrite:
    """A file written during a step, with what it held before."""

    path: Path
    before: Optional[str] = None
    """Previous content, or None if the file was created by this step."""


class ExecutionContext:
    """
    Per-step context handed to a handler tool call.

    Gives handlers the job/step identity, a logger, input de-duplication, and
    tracked file writes. File writes are undone if the tool call raises.

    Usage:
        async with ExecutionContext(job_id, flow_step_id, "export") as ctx:
            await ctx.write_file(path, content)
            # If an exception occurs, files written above are rolled back
    """

    def __init__(
        self,
        job_id: str,
        flow_step_id: str,
        handler_slug: str = "",
        processed_items: Optional[ProcessedItemStore] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.job_id = job_id
        self.flow_step_id = flow_step_id
        self.handler_slug = handler_slug
        self.logger = logger or logging.getLogger(__name__)
        self._processed_items = processed_items
        self._writes: list[FileWrite] = []

    async def __aenter__(self) -> "ExecutionContext":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        """Roll back file writes if the handler raised."""
        if exc_type is not None:
            self.logger.warning(
                f"Exception in handler '{self.handler_slug}' for job {self.job_id}, "
                f"step {self.flow_step_id}: {exc_type.__name__}: {exc_val}"
            )
            await self.rollback()
        return False  # Don't suppress the exception

    # -------------------------------------------------------------------------
    # De-duplication
    # -------------------------------------------------------------------------

    async def has_processed(self, source_type: str, item_identifier: str) -> bool:
        """Check whether this flow step already ingested the item."""
        if self._processed_items is None:
            return False
        return await self._processed_items.has_processed(
            self.flow_step_id, source_type, item_identifier
        )

    async def mark_processed(self, source_type: str, item_identifier: str) -> None:
        """Record an item as ingested by this flow step."""
        if self._processed_items is None:
            return
        await self._processed_items.mark_processed(
            self.flow_step_id, source_type, item_identifier, job_id=self.job_id
        )

    # -------------------------------------------------------------------------
    # File Operations
    # -------------------------------------------------------------------------

    async def write_file(
        self,
        path: Path | str,
        content: str,
        encoding: str = "utf-8",
    ) -> Path:
        """
        Write a file, remembering its previous content for rollback.

        Args:
            path: Destination path (parent directories are created)
            content: File content
            encoding: Text encoding (default utf-8)

        Returns:
            The written path
        """
        path = Path(path)
        before = None
        if path.exists():
            before = await self.read_file(path, encoding=encoding)

        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "w", encoding=encoding) as f:
            await f.write(content)

        self._writes.append(FileWrite(path=path, before=before))
        self.logger.debug(f"{'Modified' if before is not None else 'Created'} file: {path}")
        return path

    async def read_file(self, path: Path | str, encoding: str = "utf-8") -> str:
        async with aiofiles.open(path, "r", encoding=encoding) as f:
            return await f.read()

    async def rollback(self) -> None:
        """Undo file writes in reverse order."""
        for write in reversed(self._writes):
            try:
                if write.before is None:
                    if write.path.exists():
                        await aiofiles.os.remove(write.path)
                else:
                    async with aiofiles.open(write.path, "w", encoding="utf-8") as f:
                        await f.write(write.before)
                self.logger.debug(f"Rolled back write: {write.path}")
            except OSError as e:
                self.logger.error(
                    f"Error rolling back {write.path}: {e}\n"
                    f"{traceback.format_exc()}"
                )
        self._writes.clear()

    @property
    def written_files(self) -> list[Path]:
        return [w.path for w in self._writes]
