"""Connection manager: socket, handshake, pairing, dispatch and reconnects.

This module provides the API a host application uses. It handles:
- Opening the socket and running the noise handshake
- Pairing when no identity is stored, login otherwise
- Routing inbound nodes to IQ waiters, event handlers and tag handlers
- Keepalive pings while online
- Reconnecting with exponential backoff after transport loss
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum

from .binary import Node
from .config import ClientConfig
from .errors import (
    ConfigError,
    CryptoError,
    FormatError,
    IQError,
    MdLinkError,
    MdLinkTimeout,
    NotConnectedError,
    ProtocolError,
    RequestCancelled,
    RequestTimeout,
    StoreError,
    TransportError,
)
from .events import (
    ConnectFailureReason,
    Connected,
    Disconnected,
    Event,
    EventHandler,
    KeepAliveRestored,
    KeepAliveTimeout,
    LoggedOut,
    Message,
    Receipt,
    StreamError,
    StreamReplaced,
)
from .keys import MAX_PREKEY_ID, SignedPreKey, generate_prekeys, generate_signed_prekey
from .pairing import PairingState, PairingStateMachine
from .protocol import (
    IQ_ERROR,
    IQ_RESULT,
    NS_ENCRYPT,
    IdGenerator,
    build_client_payload,
    build_iq_result,
    build_logout,
    build_ping,
    build_prekey_upload,
    build_rotate_signed_prekey,
    build_set_passive,
    parse_iq_error,
    parse_prekey_count,
)
from .store import DeviceIdentity, Store
from .transport.framing import ByteStream, FrameTransport
from .transport.noise import NoiseHandshake
from .transport.ws_client import WsClient

_LOGGER = logging.getLogger(__name__)

NodeHandler = Callable[[Node], Awaitable[None] | None]
StreamFactory = Callable[[], Awaitable[ByteStream]]

RESTART_REQUIRED_CODE = "515"


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    PAIRING = "pairing"
    AUTHENTICATED = "authenticated"
    ONLINE = "online"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class _After(Enum):
    """What the listener does after dispatching one node."""

    CONTINUE = "continue"
    RECONNECT = "reconnect"
    RESTART = "restart"
    CLOSE = "close"


class Backoff:
    """Exponential reconnect delay with jitter.

    Delays never decrease between resets and never exceed the maximum.
    next_delay() returns None once the attempt cap is reached.
    """

    def __init__(
        self,
        base: float,
        maximum: float,
        *,
        jitter: float = 0.2,
        max_attempts: int | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._base = base
        self._maximum = maximum
        self._jitter = jitter
        self._max_attempts = max_attempts
        self._rng = rng or random.Random()
        self._attempts = 0
        self._last_delay = 0.0

    @property
    def attempts(self) -> int:
        return self._attempts

    def next_delay(self) -> float | None:
        if self._max_attempts is not None and self._attempts >= self._max_attempts:
            return None
        raw = min(self._base * (2**self._attempts), self._maximum)
        jittered = min(raw * (1 + self._rng.uniform(0, self._jitter)), self._maximum)
        delay = max(jittered, self._last_delay)
        self._attempts += 1
        self._last_delay = delay
        return delay

    def reset(self) -> None:
        self._attempts = 0
        self._last_delay = 0.0


class ConnectionManager:
    """One logical connection to the service for one identity.

    Usage:
        manager = ConnectionManager(MemoryStore(), ClientConfig(root_public_key=key))
        manager.add_event_handler(my_handler)
        manager.register_handler("message", on_message)
        await manager.connect()
        ...
        await manager.close()
    """

    def __init__(
        self,
        store: Store,
        config: ClientConfig | None = None,
        *,
        stream_factory: StreamFactory | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        if not self._config.root_public_key:
            raise ConfigError("root_public_key must be configured")
        self._store = store
        self._stream_factory = stream_factory or self._open_websocket

        # Connection state
        self._state = ConnectionState.IDLE
        self._transport: FrameTransport | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()
        self._shutdown_requested = False
        self._disconnect_reason: str | None = None
        self._online_since: float | None = None
        self._backoff = Backoff(
            self._config.reconnect_base_delay,
            self._config.reconnect_max_delay,
            jitter=self._config.reconnect_jitter,
            max_attempts=self._config.reconnect_max_attempts,
            rng=rng,
        )

        # Identity and pairing
        self._identity: DeviceIdentity | None = None
        self._pending_identity: DeviceIdentity | None = None
        self._pairing: PairingStateMachine | None = None

        # Requests
        self._ids = IdGenerator()
        self._pending: dict[str, asyncio.Future[Node]] = {}

        # Keepalive
        self._keepalive_task: asyncio.Task[None] | None = None
        self._keepalive_failures = 0
        self._last_keepalive: datetime | None = None

        # Handlers
        self._event_handlers: list[EventHandler] = []
        self._node_handlers: dict[tuple[str, str | None], list[NodeHandler]] = {}
        self._state_callback: Callable[[ConnectionState], None] | None = None
        self._background: set[asyncio.Task[None]] = set()

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state is ConnectionState.ONLINE

    @property
    def identity(self) -> DeviceIdentity | None:
        return self._identity

    @property
    def pairing(self) -> PairingStateMachine | None:
        return self._pairing

    @property
    def label(self) -> str:
        """Log label: the account JID, or "unpaired"."""
        if self._identity is not None and self._identity.jid is not None:
            return str(self._identity.jid)
        return "unpaired"

    async def connect(self) -> bool:
        """Open the socket, run the handshake and start listening.

        Returns:
            True if the handshake completed, False otherwise. Failures are
            retried in the background by the reconnect supervisor.
        """
        if self._shutdown_requested:
            _LOGGER.debug("[%s] Connection aborted: manager closed", self.label)
            return False

        waited = self._connect_lock.locked()
        async with self._connect_lock:
            if self._reconnect_task is not asyncio.current_task():
                await self._cancel_task(self._reconnect_task)
                self._reconnect_task = None
            if self._shutdown_requested:
                return False
            if waited and self._transport is not None and not self._transport.closed:
                _LOGGER.debug("[%s] Connected by a concurrent attempt", self.label)
                return True
            return await self._connect()

    async def _connect(self) -> bool:
        self._set_state(ConnectionState.CONNECTING)
        await self._teardown(TransportError("connection restarted"))
        self._disconnect_reason = None

        try:
            self._identity = await self._store.get_identity()
            identity = self._identity
            if identity is None:
                if self._pending_identity is None:
                    self._pending_identity = DeviceIdentity.generate()
                identity = self._pending_identity

            _LOGGER.info(
                "[%s] Connecting to %s (attempt #%d)",
                self.label,
                self._config.url,
                self._backoff.attempts + 1,
            )
            stream = await self._stream_factory()
            transport = FrameTransport(
                stream,
                max_node_size=self._config.max_node_size,
                max_node_depth=self._config.max_node_depth,
                label=self.label,
            )
            self._transport = transport

            handshake = NoiseHandshake(
                transport,
                identity.noise_key,
                self._config.root_public_key or b"",
                label=self.label,
            )
            try:
                keys = await asyncio.wait_for(
                    handshake.perform(build_client_payload(identity, self._config)),
                    timeout=self._config.handshake_timeout,
                )
            except TimeoutError as err:
                raise MdLinkTimeout("noise handshake timed out") from err
            transport.establish(keys)
        except (TransportError, MdLinkTimeout) as err:
            _LOGGER.warning("[%s] Connection failed: %s", self.label, err)
            await self._connection_lost(f"connect failed: {err}", emit=False)
            return False
        except (CryptoError, ProtocolError, FormatError) as err:
            _LOGGER.error("[%s] Handshake failed: %s", self.label, err)
            await self._connection_lost(f"handshake failed: {err}", emit=False)
            return False

        _LOGGER.info("[%s] Handshake complete, starting listener", self.label)
        self._listen_task = asyncio.create_task(self._listen())

        if identity.is_paired:
            self._set_state(ConnectionState.AUTHENTICATED)
        else:
            self._set_state(ConnectionState.PAIRING)
            self._pairing = PairingStateMachine(
                self,
                self._store,
                identity,
                keys.remote_static,
                self._emit,
                code_ttl=self._config.qr_code_ttl,
                max_rotations=self._config.qr_max_rotations,
                on_finished=self._pairing_finished,
            )
            self._spawn(self._pairing.start())
        return True

    async def close(self) -> None:
        """Close the connection for good; pending requests are cancelled."""
        _LOGGER.info("[%s] Closing connection", self.label)
        self._shutdown_requested = True
        await self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        await self._teardown(RequestCancelled("connection closed"))
        if self._state is not ConnectionState.CLOSED:
            self._set_state(ConnectionState.CLOSED)
            await self._emit(Disconnected(reason="closed"))

    async def logout(self) -> None:
        """Unlink this device from the account and close."""
        identity = self._identity
        if identity is None or identity.jid is None:
            raise ProtocolError("not logged in")
        await self.send_iq(build_logout(self.next_id(), identity.jid))
        async with self._store.identity_lock():
            await self._store.delete_identity()
        _LOGGER.info("[%s] Logged out", self.label)
        await self._emit(
            LoggedOut(on_connect=False, reason=ConnectFailureReason.LOGGED_OUT)
        )
        await self.close()

    # -------------------------------------------------------------------------
    # Public API: Handlers
    # -------------------------------------------------------------------------

    def add_event_handler(self, handler: EventHandler) -> None:
        self._event_handlers.append(handler)

    def remove_event_handler(self, handler: EventHandler) -> None:
        with contextlib.suppress(ValueError):
            self._event_handlers.remove(handler)

    def register_handler(
        self, tag: str, handler: NodeHandler, *, xmlns: str | None = None
    ) -> None:
        """Route inbound nodes with this tag (and namespace, if given) to handler."""
        self._node_handlers.setdefault((tag, xmlns), []).append(handler)

    def on_state_changed(self, callback: Callable[[ConnectionState], None]) -> None:
        self._state_callback = callback

    # -------------------------------------------------------------------------
    # Public API: Sending
    # -------------------------------------------------------------------------

    def next_id(self) -> str:
        return self._ids.next_id()

    async def send_node(self, item: Node) -> None:
        transport = self._transport
        if transport is None or not transport.is_established:
            raise NotConnectedError("not connected")
        await transport.send_node(item)

    async def send_iq(self, request: Node, *, timeout: float | None = None) -> Node:
        """Send an IQ and wait for the response with the same id.

        Raises:
            RequestTimeout: no response before the deadline.
            RequestCancelled: the manager was closed while waiting.
            TransportError: the connection dropped while waiting.
            IQError: the server answered with type="error".
        """
        iq_id = request.attrs.get("id")
        if not iq_id:
            raise ValueError("IQ request needs an id attribute")
        future: asyncio.Future[Node] = asyncio.get_running_loop().create_future()
        self._pending[iq_id] = future
        try:
            await self.send_node(request)
            response = await asyncio.wait_for(
                future, timeout=timeout or self._config.request_timeout
            )
        except TimeoutError as err:
            raise RequestTimeout(f"no response to iq {iq_id}") from err
        finally:
            self._pending.pop(iq_id, None)

        if response.attrs.get("type") == IQ_ERROR:
            raise parse_iq_error(response)
        return response

    # -------------------------------------------------------------------------
    # Public API: Prekeys
    # -------------------------------------------------------------------------

    async def upload_prekeys(self, count: int | None = None) -> int:
        """Generate, persist and upload one-time prekeys.

        Returns:
            Number of prekeys uploaded.
        """
        count = count or self._config.prekey_upload_count
        async with self._store.identity_lock():
            identity = await self._require_identity()
            prekeys = generate_prekeys(identity.next_prekey_id, count)
            await self._store.put_prekeys(prekeys)
            next_id = (identity.next_prekey_id + count - 1) % MAX_PREKEY_ID + 1
            identity = identity.with_next_prekey_id(next_id)
            await self._store.put_identity(identity)
            self._identity = identity

        await self.send_iq(
            build_prekey_upload(
                self.next_id(),
                identity.registration_id,
                identity.identity_key.public,
                identity.signed_prekey,
                prekeys,
            )
        )
        _LOGGER.info("[%s] Uploaded %d prekeys", self.label, len(prekeys))
        return len(prekeys)

    async def rotate_signed_prekey(self) -> SignedPreKey:
        """Replace the signed prekey, persist it and announce it when online."""
        async with self._store.identity_lock():
            identity = await self._require_identity()
            key_id = identity.signed_prekey.key_id % MAX_PREKEY_ID + 1
            signed_prekey = generate_signed_prekey(identity.identity_key, key_id)
            identity = identity.with_signed_prekey(signed_prekey)
            await self._store.put_identity(identity)
            self._identity = identity

        if self.is_online:
            await self.send_iq(build_rotate_signed_prekey(self.next_id(), signed_prekey))
        _LOGGER.info("[%s] Rotated signed prekey to id %d", self.label, key_id)
        return signed_prekey

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        """Update connection state and notify callback."""
        if self._state != state:
            _LOGGER.debug(
                "[%s] State: %s → %s", self.label, self._state.value, state.value
            )
            self._state = state
            if self._state_callback:
                self._state_callback(state)

    async def _open_websocket(self) -> ByteStream:
        ws_client = WsClient()
        await ws_client.connect(
            self._config.url,
            origin=self._config.origin,
            timeout=self._config.connect_timeout,
        )
        return ws_client

    async def _require_identity(self) -> DeviceIdentity:
        identity = await self._store.get_identity()
        if identity is None:
            raise StoreError("no paired identity in store")
        return identity

    async def _cancel_task(self, task: asyncio.Task[None] | None) -> None:
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _teardown(self, error: MdLinkError) -> None:
        """Stop every task of the current connection and release the socket."""
        await self._cancel_task(self._keepalive_task)
        self._keepalive_task = None
        await self._cancel_task(self._listen_task)
        self._listen_task = None
        for task in list(self._background):
            await self._cancel_task(task)
        self._background.clear()

        if self._pairing is not None:
            await self._pairing.close()
            self._pairing = None

        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

        if self._transport is not None:
            try:
                await asyncio.wait_for(self._transport.close(), timeout=2.0)
            except TimeoutError:
                _LOGGER.warning("[%s] Transport close timed out", self.label)
            self._transport = None

    async def _connection_lost(self, reason: str, *, emit: bool = True) -> None:
        """Tear down and hand over to the reconnect supervisor."""
        if self._online_since is not None:
            online_for = asyncio.get_running_loop().time() - self._online_since
            if online_for >= self._config.backoff_reset_after:
                _LOGGER.debug(
                    "[%s] Online for %.0fs, resetting backoff", self.label, online_for
                )
                self._backoff.reset()
            self._online_since = None

        await self._teardown(TransportError(reason))
        self._set_state(ConnectionState.DISCONNECTED)
        if emit:
            await self._emit(Disconnected(reason=reason))
        self._schedule_reconnect()

    def _schedule_reconnect(self, delay: float | None = None) -> None:
        """Schedule reconnection attempt with exponential backoff."""
        if self._shutdown_requested:
            return
        if self._reconnect_task and self._reconnect_task is not asyncio.current_task():
            return

        if delay is None:
            delay = self._backoff.next_delay()
        if delay is None:
            _LOGGER.error(
                "[%s] Giving up after %d reconnect attempts",
                self.label,
                self._backoff.attempts,
            )
            self._shutdown_requested = True
            self._set_state(ConnectionState.CLOSED)
            return

        _LOGGER.info(
            "[%s] Reconnecting in %.1fs (attempt %d)",
            self.label,
            delay,
            self._backoff.attempts,
        )
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay(delay))

    async def _reconnect_after_delay(self, delay: float) -> None:
        """Reconnect after delay."""
        try:
            await asyncio.sleep(delay)
            await self.connect()
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Reconnect cancelled", self.label)
            raise
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    # -------------------------------------------------------------------------
    # Internal: Message Listener
    # -------------------------------------------------------------------------

    async def _listen(self) -> None:
        """Receive and dispatch nodes until the connection ends."""
        transport = self._transport
        if transport is None:
            return

        node_count = 0
        after = _After.CONTINUE
        try:
            while after is _After.CONTINUE:
                try:
                    item = await transport.receive_node()
                except FormatError as err:
                    _LOGGER.warning("[%s] Dropping malformed node: %s", self.label, err)
                    continue
                node_count += 1
                after = await self._dispatch(item)

        except asyncio.CancelledError:
            _LOGGER.debug(
                "[%s] Listener cancelled (%d nodes)", self.label, node_count
            )
            raise
        except MdLinkError as err:
            _LOGGER.warning("[%s] Connection error: %s", self.label, err)
            self._disconnect_reason = self._disconnect_reason or str(err)
            after = _After.RECONNECT
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected error: %s", self.label, err)
            self._disconnect_reason = f"unexpected error: {err}"
            after = _After.RECONNECT

        if self._shutdown_requested:
            return
        if after is _After.CLOSE:
            await self.close()
        elif after is _After.RESTART:
            _LOGGER.info("[%s] Server requested a stream restart", self.label)
            await self._teardown(TransportError("stream restart"))
            self._set_state(ConnectionState.DISCONNECTED)
            self._schedule_reconnect(delay=0.0)
        else:
            await self._connection_lost(self._disconnect_reason or "connection lost")

    async def _dispatch(self, item: Node) -> _After:
        tag = item.tag
        iq_type = item.attrs.get("type")
        after = _After.CONTINUE

        if tag == "iq" and iq_type in (IQ_RESULT, IQ_ERROR):
            future = self._pending.get(item.attrs.get("id", ""))
            if future is not None:
                if not future.done():
                    future.set_result(item)
                return after
        if tag == "success":
            await self._handle_success(item)
        elif tag == "failure":
            after = await self._handle_failure(item)
        elif tag == "stream:error":
            after = await self._handle_stream_error(item)
        elif tag == "iq":
            await self._handle_iq(item)
        elif tag == "notification" and iq_type == NS_ENCRYPT:
            self._handle_encrypt_notification(item)
        elif tag == "message":
            await self._emit(Message(node=item))
        elif tag == "receipt":
            await self._emit(Receipt(node=item))

        xmlns = item.attrs.get("xmlns")
        handlers = list(self._node_handlers.get((tag, None), []))
        if xmlns is not None:
            handlers += self._node_handlers.get((tag, xmlns), [])
        for handler in handlers:
            try:
                result = handler(item)
                if inspect.isawaitable(result):
                    await result
            except Exception as err:
                _LOGGER.exception("[%s] Handler error for %s: %s", self.label, tag, err)
        return after

    # -------------------------------------------------------------------------
    # Internal: Protocol Handlers
    # -------------------------------------------------------------------------

    async def _handle_success(self, item: Node) -> None:
        if self._state is not ConnectionState.AUTHENTICATED:
            _LOGGER.warning("[%s] Unexpected <success> in %s", self.label, self._state.value)
            return
        self._online_since = asyncio.get_running_loop().time()
        self._set_state(ConnectionState.ONLINE)
        _LOGGER.info("[%s] Online", self.label)

        self._keepalive_failures = 0
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        self._spawn(self._set_active())
        await self._emit(Connected())

    async def _handle_failure(self, item: Node) -> _After:
        code = item.attrs.get("reason", "")
        reason = ConnectFailureReason.from_code(int(code) if code.isdigit() else 0)
        if reason.is_logged_out:
            _LOGGER.error("[%s] Logged out by server (%d)", self.label, reason.value)
            async with self._store.identity_lock():
                await self._store.delete_identity()
            self._identity = None
            await self._emit(LoggedOut(on_connect=True, reason=reason))
            return _After.CLOSE
        _LOGGER.warning("[%s] Connect failure: %s", self.label, reason.name)
        self._disconnect_reason = f"connect failure {reason.value}"
        return _After.RECONNECT

    async def _handle_stream_error(self, item: Node) -> _After:
        code = item.attrs.get("code", "")
        if code == RESTART_REQUIRED_CODE:
            return _After.RESTART
        conflict = item.get_child("conflict")
        if conflict is not None and conflict.attrs.get("type") == "replaced":
            _LOGGER.error("[%s] Stream replaced by another client", self.label)
            await self._emit(StreamReplaced())
            return _After.CLOSE
        _LOGGER.warning("[%s] Stream error %s", self.label, code or "unknown")
        await self._emit(StreamError(code=code, raw=item))
        self._disconnect_reason = f"stream error {code or 'unknown'}"
        return _After.RECONNECT

    async def _handle_iq(self, item: Node) -> None:
        if item.attrs.get("type") == "get" and item.get_child("ping") is not None:
            await self.send_node(build_iq_result(item))
            return
        if item.attrs.get("type") != "set":
            _LOGGER.debug("[%s] Unhandled %r", self.label, item)
            return

        pairing = self._pairing
        if item.get_child("pair-device") is not None:
            if pairing is None:
                _LOGGER.warning("[%s] pair-device outside pairing", self.label)
                return
            self._spawn(pairing.handle_pair_device(item))
        elif item.get_child("pair-success") is not None:
            if pairing is None:
                _LOGGER.warning("[%s] pair-success outside pairing", self.label)
                return
            self._spawn(pairing.handle_pair_success(item))

    def _handle_encrypt_notification(self, item: Node) -> None:
        count = parse_prekey_count(item)
        if count is not None and count < self._config.prekey_low_watermark:
            _LOGGER.info("[%s] Server has %d prekeys left", self.label, count)
            self._spawn(self.upload_prekeys())

    async def _pairing_finished(self, state: PairingState) -> None:
        pairing = self._pairing
        if state is PairingState.PAIRED and pairing is not None:
            self._identity = pairing.result
            self._pending_identity = None
            _LOGGER.info("[%s] Paired, waiting for stream restart", self.label)
            return
        _LOGGER.error("[%s] Pairing failed, disconnecting", self.label)
        await self._teardown(TransportError("pairing failed"))
        self._set_state(ConnectionState.DISCONNECTED)
        await self._emit(Disconnected(reason="pairing failed"))

    async def _set_active(self) -> None:
        try:
            await self.send_iq(build_set_passive(self.next_id(), passive=False))
        except IQError as err:
            _LOGGER.warning("[%s] Server rejected active mode: %s", self.label, err)

    # -------------------------------------------------------------------------
    # Internal: Keepalive
    # -------------------------------------------------------------------------

    async def _keepalive_loop(self) -> None:
        """Ping periodically; force a reconnect after repeated failures."""
        try:
            while not self._shutdown_requested:
                await asyncio.sleep(self._config.keepalive_interval)
                try:
                    await self.send_iq(
                        build_ping(self.next_id()),
                        timeout=self._config.keepalive_timeout,
                    )
                except (MdLinkTimeout, IQError) as err:
                    self._keepalive_failures += 1
                    _LOGGER.warning(
                        "[%s] Keepalive failed (%d in a row): %s",
                        self.label,
                        self._keepalive_failures,
                        err,
                    )
                    await self._emit(
                        KeepAliveTimeout(
                            error_count=self._keepalive_failures,
                            last_success=self._last_keepalive,
                        )
                    )
                    if self._keepalive_failures >= self._config.keepalive_max_failures:
                        _LOGGER.error(
                            "[%s] Connection dead (%d missed pings)",
                            self.label,
                            self._keepalive_failures,
                        )
                        self._disconnect_reason = "keepalive timeout"
                        if self._transport is not None:
                            await self._transport.close()
                        return
                    continue

                if self._keepalive_failures:
                    _LOGGER.info("[%s] Keepalive restored", self.label)
                    self._keepalive_failures = 0
                    await self._emit(KeepAliveRestored())
                self._last_keepalive = datetime.now(tz=UTC)

        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Keepalive cancelled", self.label)
            raise
        except (TransportError, RequestCancelled) as err:
            _LOGGER.debug("[%s] Keepalive stopped: %s", self.label, err)

    # -------------------------------------------------------------------------
    # Internal: Events and tasks
    # -------------------------------------------------------------------------

    async def _emit(self, event: Event) -> None:
        for handler in list(self._event_handlers):
            try:
                result = handler.on_event(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as err:
                _LOGGER.exception(
                    "[%s] Event handler error for %s: %s",
                    self.label,
                    type(event).__name__,
                    err,
                )

    def _spawn(self, coro: Awaitable[None]) -> None:
        """Run coro beside the listener; it is cancelled with the connection."""
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            _LOGGER.warning("[%s] Background task failed: %s", self.label, err)
