"""Handler registry - central, append-only registry for loaded handlers."""

from typing import Optional
import logging

from .base import Handler, ToolDefinition
from ..errors import HandlerNotFound, RegistryError
from ..models import StepType

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """
    Central registry mapping handler slugs to handler instances.

    Populated once at startup (plugin modules call ``register``), then
    frozen. After ``freeze()`` the registry is read-only, so lookups from
    concurrently running jobs need no locking.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._handlers: dict[str, Handler] = {}
        self._frozen = False
        self.logger = logger or logging.getLogger(__name__)

    def register(self, handler: Handler) -> None:
        """
        Register a handler.

        Args:
            handler: The handler to register

        Raises:
            RegistryError: If the handler has no slug or an unknown type, the
                slug is taken, or the registry is frozen
        """
        if self._frozen:
            raise RegistryError(f"Registry is frozen; cannot register '{handler.slug}'")

        if not handler.slug:
            raise RegistryError(f"Handler {handler.__class__.__name__} has no slug")

        try:
            StepType(handler.handler_type)
        except ValueError:
            raise RegistryError(
                f"Handler '{handler.slug}' has unknown type '{handler.handler_type}'"
            ) from None

        if handler.slug in self._handlers:
            raise RegistryError(f"Handler '{handler.slug}' is already registered")

        self._handlers[handler.slug] = handler
        self.logger.info(f"Registered handler: {handler.slug} ({StepType(handler.handler_type).value})")

    def freeze(self) -> None:
        """Seal the registry against further registration."""
        self._frozen = True
        self.logger.debug(f"Handler registry frozen with {len(self)} handlers")

    @property
    def frozen(self) -> bool:
        return self._frozen

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, slug: str) -> Optional[Handler]:
        return self._handlers.get(slug)

    def get_by_type(self, handler_type: StepType | str) -> dict[str, Handler]:
        """All handlers serving one step type, keyed by slug."""
        wanted = StepType(handler_type)
        return {
            slug: h for slug, h in self._handlers.items()
            if StepType(h.handler_type) == wanted
        }

    def require(self, slug: str, handler_type: StepType | str) -> Handler:
        """
        Get a handler of a given type.

        Raises:
            HandlerNotFound: If no handler of that type has this slug
        """
        handler = self.get_by_type(handler_type).get(slug)
        if handler is None:
            raise HandlerNotFound(slug, StepType(handler_type).value)
        return handler

    def tools_for(self, slug: str) -> list[ToolDefinition]:
        handler = self.get(slug)
        return list(handler.tools) if handler else []

    def get_slugs(self) -> list[str]:
        return list(self._handlers.keys())

    def describe(self) -> list[dict]:
        """Descriptors of all handlers, for the API."""
        return [h.describe() for h in self._handlers.values()]

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, slug: str) -> bool:
        return slug in self._handlers

    def __iter__(self):
        return iter(self._handlers.values())
