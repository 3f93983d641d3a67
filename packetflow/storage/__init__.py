"""Storage layer for PacketFlow."""

from .database import Database
from .job_store import JobStore
from .flow_store import FlowStore
from .processed_items import ProcessedItemStore

__all__ = ["Database", "JobStore", "FlowStore", "ProcessedItemStore"]
