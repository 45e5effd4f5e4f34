"""Ownership of the authenticated transport for one device."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List, Optional

from .errors import NotConnectedError, classify_connect_error
from .process import best_effort
from .transport import Authenticator, DeviceTransport

logger = logging.getLogger(__name__)

ShutdownHook = Callable[[], Awaitable[object]]


class Connection:
    """
    Open and close the transport to one device.

    Components sharing the transport register shutdown hooks; :meth:`close`
    runs them in registration order before the transport itself is closed.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        device_id: str,
        credentials: Any = None,
    ) -> None:
        self._authenticator = authenticator
        self.device_id = device_id
        self._credentials = credentials
        self._transport: Optional[DeviceTransport] = None
        self._hooks: List[ShutdownHook] = []

    @property
    def is_open(self) -> bool:
        return self._transport is not None

    @property
    def transport(self) -> DeviceTransport:
        if self._transport is None:
            raise NotConnectedError(f"Not connected to {self.device_id}")
        return self._transport

    def add_shutdown_hook(self, hook: ShutdownHook) -> None:
        self._hooks.append(hook)

    async def open(self) -> DeviceTransport:
        if self._transport is not None:
            return self._transport
        logger.info(f"Connecting to {self.device_id}")
        try:
            transport = await self._authenticator.authenticate(self.device_id, self._credentials)
        except Exception as exc:
            error = classify_connect_error(exc)
            logger.error(f"Connection to {self.device_id} failed: {error}")
            if error is exc:
                raise
            raise error from exc
        self._transport = transport
        logger.info(f"Connected to {self.device_id}")
        return transport

    async def close(self) -> None:
        """Run shutdown hooks, then release the transport. Safe to call twice."""
        transport = self._transport
        if transport is None:
            return
        logger.info(f"Closing connection to {self.device_id}")
        self._transport = None
        hooks, self._hooks = self._hooks, []
        for hook in hooks:
            await best_effort(hook, "connection shutdown hook")
        await best_effort(transport.close, "transport close")
        logger.info(f"Disconnected from {self.device_id}")
