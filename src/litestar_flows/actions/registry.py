"""Registry of action handlers.

The registry is the synchronous-call boundary the step executor uses for
action steps: it resolves the handler named in the step config, interpolates
its params against the instance context, and runs it under a timeout.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any

from litestar_flows.actions.builtin import BUILTIN_HANDLERS
from litestar_flows.actions.expressions import interpolate_data
from litestar_flows.exceptions import HandlerError, HandlerTimeout, UnknownActionHandler

if TYPE_CHECKING:
    from collections.abc import Callable

    from litestar_flows.core.definition import ActionConfig
    from litestar_flows.core.protocols import ActionHandler

__all__ = ["ActionHandlerRegistry"]

logger = logging.getLogger(__name__)


class ActionHandlerRegistry:
    """Maps handler names to action callables.

    Handlers receive ``(params, context)`` and return a mapping that is
    merged into the instance context, or None for no output.

    Example:
        >>> registry = ActionHandlerRegistry()
        >>> @registry.handler("reserve_stock")
        ... async def reserve_stock(params, context):
        ...     return {"reservation_id": await inventory.reserve(params["sku"])}
    """

    def __init__(self, *, include_builtins: bool = True) -> None:
        """Initialize the registry.

        Args:
            include_builtins: Register ``set_context``, ``evaluate`` and ``wait``.
        """
        self._handlers: dict[str, ActionHandler] = {}
        if include_builtins:
            for name, handler in BUILTIN_HANDLERS.items():
                self.register(name, handler)

    def register(self, name: str, handler: ActionHandler) -> None:
        """Register ``handler`` under ``name``, replacing any previous one."""
        self._handlers[name] = handler

    def handler(self, name: str) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator form of ``register``."""

        def decorator(func: ActionHandler) -> ActionHandler:
            self.register(name, func)
            return func

        return decorator

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def has_handler(self, name: str) -> bool:
        return name in self._handlers

    def get(self, name: str) -> ActionHandler:
        """Return the handler registered under ``name``.

        Raises:
            UnknownActionHandler: If nothing is registered under ``name``.
        """
        try:
            return self._handlers[name]
        except KeyError:
            raise UnknownActionHandler(name) from None

    def list_handlers(self) -> list[str]:
        return sorted(self._handlers)

    async def invoke(self, config: ActionConfig, context: dict[str, Any], timeout: float | None) -> dict[str, Any]:
        """Run the handler named by ``config`` with a bounded timeout.

        Args:
            config: The action step configuration.
            context: Snapshot of the instance context.
            timeout: Seconds before the call is abandoned; None waits forever.

        Returns:
            The handler output, normalized to a dict.

        Raises:
            HandlerTimeout: If the handler exceeded ``timeout``.
            HandlerError: If the handler is unknown or raised.
        """
        try:
            handler = self.get(config.handler)
        except UnknownActionHandler as exc:
            raise HandlerError(config.handler, exc, message=str(exc)) from exc

        params = interpolate_data(dict(config.params), context)
        if _is_async(handler):
            call = handler(params, context)
        else:
            # Blocking handlers run off the event loop so the timeout applies.
            call = asyncio.to_thread(handler, params, context)
        try:
            result = await asyncio.wait_for(call, timeout=timeout)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise HandlerTimeout(config.handler, timeout) from exc
        except Exception as exc:
            raise HandlerError(config.handler, exc, message=f"Action '{config.handler}' failed: {exc}") from exc

        if result is None:
            return {}
        if not isinstance(result, dict):
            logger.debug("Action handler %s returned %s, wrapping as result", config.handler, type(result).__name__)
            return {"result": result}
        return result


def _is_async(handler: ActionHandler) -> bool:
    return inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(getattr(handler, "__call__", None))
