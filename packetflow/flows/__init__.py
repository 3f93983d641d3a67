"""Flow definitions on disk: YAML loading and hot reload."""

from .config_loader import load_flows_from_yaml, save_flows_to_yaml, write_example_config
from .watcher import FlowConfigWatcher

__all__ = [
    "FlowConfigWatcher",
    "load_flows_from_yaml",
    "save_flows_to_yaml",
    "write_example_config",
]
