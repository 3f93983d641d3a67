"""Plugin loader - discovers handler plugins and registers them."""

from pathlib import Path
from typing import Optional, Any
import importlib.util
import sys
import yaml
import logging

from .base import Handler
from .registry import HandlerRegistry

logger = logging.getLogger(__name__)


class HandlerLoader:
    """
    Discovers and loads handler plugins from a directory.

    Plugin structure:
        plugins/
        ├── rss/
        │   ├── manifest.yaml     # Metadata and config defaults
        │   └── handler.py        # Handler implementation

    The manifest.yaml may contain:
        slug: rss
        type: input
        display_name: RSS Feed
        description: What this handler does
        version: 1.0.0
        handler_class: RSSHandler
        config:
          timeout:
            type: number
            default: 10

    A plugin module registers itself by exposing ``register(registry, config)``.
    Modules without it are scanned for a Handler subclass (or the manifest's
    ``handler_class``), which is instantiated and registered here.
    """

    def __init__(
        self,
        plugins_dir: Path | str,
        registry: HandlerRegistry,
        logger: Optional[logging.Logger] = None,
    ):
        self.plugins_dir = Path(plugins_dir)
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)
        self._loaded_modules: dict[str, Any] = {}

    async def load_all(self) -> list[str]:
        """
        Load all plugins from the plugins directory.

        A broken plugin is logged and skipped; the others still load.

        Returns:
            Slugs of the handlers registered
        """
        if not self.plugins_dir.exists():
            self.logger.warning(f"Plugins directory does not exist: {self.plugins_dir}")
            return []

        loaded = []

        for plugin_path in sorted(self.plugins_dir.iterdir()):
            if not plugin_path.is_dir():
                continue

            if plugin_path.name.startswith("_") or plugin_path.name.startswith("."):
                continue

            try:
                loaded.extend(await self.load_plugin(plugin_path))
            except Exception as e:
                self.logger.error(f"Failed to load plugin from {plugin_path}: {e}")

        self.logger.info(f"Loaded {len(loaded)} handlers: {loaded}")
        return loaded

    async def load_plugin(self, plugin_path: Path) -> list[str]:
        """
        Load a single plugin from its directory.

        Args:
            plugin_path: Path to the plugin directory

        Returns:
            Slugs the plugin registered (empty if it had no handler module)
        """
        handler_path = plugin_path / "handler.py"
        if not handler_path.exists():
            self.logger.warning(f"No handler.py found in {plugin_path}")
            return []

        manifest = self._load_manifest(plugin_path / "manifest.yaml") or {}
        config = self._default_config(manifest)
        module = self._load_module(handler_path)

        before = set(self.registry.get_slugs())

        register = getattr(module, "register", None)
        if callable(register):
            register(self.registry, config)
        else:
            handler_class = self._find_handler_class(module, manifest)
            if handler_class is None:
                self.logger.error(f"No Handler subclass found in {handler_path}")
                return []
            handler = handler_class(config=config)
            self._apply_manifest(handler, manifest)
            self.registry.register(handler)

        added = [slug for slug in self.registry.get_slugs() if slug not in before]
        for slug in added:
            handler = self.registry.get(slug)
            await handler.on_load()
            self.logger.info(f"Loaded handler: {slug} v{handler.version}")
        return added

    async def unload_all(self) -> None:
        """Call on_unload on every handler and drop the plugin modules."""
        for handler in self.registry:
            try:
                await handler.on_unload()
            except Exception as e:
                self.logger.error(f"Error calling on_unload for {handler.slug}: {e}")

        for module_name in list(self._loaded_modules):
            sys.modules.pop(module_name, None)
        self._loaded_modules.clear()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _load_manifest(self, manifest_path: Path) -> Optional[dict]:
        """Load and parse the manifest.yaml file."""
        if not manifest_path.exists():
            return None

        try:
            with open(manifest_path, "r", encoding="utf-8") as f:
                return yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            self.logger.error(f"Error loading manifest from {manifest_path}: {e}")
            return None

    def _default_config(self, manifest: dict) -> dict[str, Any]:
        """Collect ``default`` values from the manifest's config schema."""
        return {
            key: schema["default"]
            for key, schema in (manifest.get("config") or {}).items()
            if isinstance(schema, dict) and "default" in schema
        }

    def _load_module(self, handler_path: Path):
        module_name = f"packetflow_plugin_{handler_path.parent.name}"

        spec = importlib.util.spec_from_file_location(module_name, handler_path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Could not load spec for {handler_path}")

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception:
            sys.modules.pop(module_name, None)
            raise

        self._loaded_modules[module_name] = module
        return module

    def _find_handler_class(self, module, manifest: dict) -> Optional[type[Handler]]:
        class_name = manifest.get("handler_class")
        if class_name and hasattr(module, class_name):
            return getattr(module, class_name)

        for name in dir(module):
            obj = getattr(module, name)
            if (
                isinstance(obj, type)
                and issubclass(obj, Handler)
                and obj is not Handler
                and obj.__module__ == module.__name__
            ):
                return obj
        return None

    def _apply_manifest(self, handler: Handler, manifest: dict) -> None:
        """Override handler metadata with manifest values."""
        if "slug" in manifest:
            handler.slug = manifest["slug"]
        if "type" in manifest:
            handler.handler_type = manifest["type"]
        if "display_name" in manifest:
            handler.display_name = manifest["display_name"]
        if "description" in manifest:
            handler.description = manifest["description"]
        if "version" in manifest:
            handler.version = str(manifest["version"])
