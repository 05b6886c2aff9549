"""
Modal surface sessions.

A ``PopupSession`` binds one interactive surface (import confirmation,
passphrase prompt or compose editor) to exactly one pending decision. The
decision is settled once: by an explicit answer from the surface, by the
owning operation, or by the surface being closed from outside.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

from .common.exceptions import PopupBusyError
from .interfaces import SurfaceHandle, SurfaceHost

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[dict[str, Any]], None]


class PopupKind(str, Enum):
    """Kinds of modal surfaces the core can open."""

    IMPORT_KEY = "import-key"
    PASSWORD = "password"
    EDITOR = "editor"


class PopupSession(Generic[T]):
    """
    One open surface and its single pending continuation.

    Messages from the surface are routed by name. A *response* turns the
    message data into the session's value (or raises to fail it); a
    *listener* only observes the message and leaves the session pending.

    ``on_dismiss`` decides what closing the surface without an answer
    means: it returns the default value or raises the cancel error.
    """

    def __init__(
        self,
        host: SurfaceHost,
        kind: PopupKind,
        on_dismiss: Callable[[], T],
    ) -> None:
        self.host = host
        self.kind = kind
        self._on_dismiss = on_dismiss
        self._handle: Optional[SurfaceHandle] = None
        self._responses: dict[str, Callable[[dict[str, Any]], T]] = {}
        self._listeners: dict[str, Listener] = {}
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    @property
    def settled(self) -> bool:
        return self._future.done()

    @property
    def future(self) -> "asyncio.Future[T]":
        return self._future

    async def open(
        self,
        payload: dict[str, Any],
        responses: Optional[dict[str, Callable[[dict[str, Any]], T]]] = None,
        listeners: Optional[dict[str, Listener]] = None,
    ) -> None:
        """
        Open the surface and start dispatching its messages.

        Args:
            payload: Data the surface needs to render.
            responses: Message names that settle the session.
            listeners: Message names that are only observed.
        """
        self._responses = dict(responses or {})
        self._listeners = dict(listeners or {})
        handle = await self.host.open(self.kind.value, payload)
        self._handle = handle
        handle.on_message(self._dispatch)
        handle.on_close(self._surface_closed)
        logger.debug("Opened %s surface", self.kind.value)

    def post(self, name: str, data: Optional[dict[str, Any]] = None) -> None:
        """Send a message to the open surface."""
        if self._handle is not None:
            self._handle.post(name, data or {})

    def settle(self, value: T) -> None:
        if not self._future.done():
            self._future.set_result(value)

    def fail(self, error: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(error)

    def close(self) -> None:
        """Close the surface. Closing an already closed surface is a no-op."""
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()

    async def wait(self) -> T:
        return await self._future

    def _dispatch(self, name: str, data: dict[str, Any]) -> None:
        if name in self._responses:
            if self._future.done():
                return
            try:
                self.settle(self._responses[name](data))
            except Exception as e:
                self.fail(e)
        elif name in self._listeners:
            self._listeners[name](data)
        else:
            logger.debug("Ignoring %s message on %s surface", name, self.kind.value)

    def _surface_closed(self) -> None:
        self._handle = None
        if self._future.done():
            return
        try:
            value = self._on_dismiss()
        except Exception as e:
            self.fail(e)
        else:
            self.settle(value)


class PopupSlot:
    """Holds at most one live ``PopupSession`` for its owner."""

    def __init__(self, host: Optional[SurfaceHost]) -> None:
        self.host = host
        self._session: Optional[PopupSession[Any]] = None

    @property
    def available(self) -> bool:
        return self.host is not None

    @property
    def active(self) -> Optional[PopupSession[Any]]:
        if self._session is not None and self._session.settled:
            return None
        return self._session

    async def open(
        self,
        kind: PopupKind,
        payload: dict[str, Any],
        on_dismiss: Callable[[], T],
        responses: Optional[dict[str, Callable[[dict[str, Any]], T]]] = None,
        listeners: Optional[dict[str, Listener]] = None,
    ) -> PopupSession[T]:
        """
        Open a new session in this slot.

        Raises:
            PopupBusyError: If a session in this slot has not settled yet.
            RuntimeError: If the slot has no surface host.
        """
        if self.host is None:
            raise RuntimeError("No surface host configured")
        if self.active is not None:
            raise PopupBusyError(
                f"A {self.active.kind.value} popup is already open"
            )
        session: PopupSession[T] = PopupSession(self.host, kind, on_dismiss)
        self._session = session
        session.future.add_done_callback(lambda _: self._release(session))
        try:
            await session.open(payload, responses, listeners)
        except BaseException:
            session.future.cancel()
            raise
        return session

    def _release(self, session: PopupSession[Any]) -> None:
        if self._session is session:
            self._session = None
