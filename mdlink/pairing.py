"""Device pairing state machine.

A new client shows reference codes as QR strings; when the primary device
scans one, the server pushes a pair-success IQ carrying the account-signed
device identity. The client verifies the HMAC and the account signature,
countersigns, confirms and only then persists the identity.

    AWAITING_QR → QR_DISPLAYED → PAIR_REQUESTED → PAIR_CONFIRMED → PAIRED
                    (any) ────────────────────────────────────────→ FAILED
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Final, Protocol

from .binary import Node
from .errors import (
    MdLinkError,
    PairingError,
    PairingSignatureError,
    PairingTimeout,
    ProtocolError,
)
from .events import Event, PairError, PairSuccess, Qr
from .jid import JID
from .keys import verify_signature
from .protobuf_util import (
    DeviceIdentityDetails,
    DeviceIdentityHmac,
    SignedDeviceIdentity,
    parse_message,
    serialize_message,
)
from .protocol import (
    build_iq_result,
    build_pair_device_request,
    build_pair_device_sign,
    parse_pair_device_refs,
)
from .store import DeviceIdentity, Store

_LOGGER = logging.getLogger(__name__)

ACCOUNT_SIGNATURE_PREFIX: Final = b"\x06\x00"
DEVICE_SIGNATURE_PREFIX: Final = b"\x06\x01"


class PairingState(Enum):
    AWAITING_QR = "awaiting_qr"
    QR_DISPLAYED = "qr_displayed"
    PAIR_REQUESTED = "pair_requested"
    PAIR_CONFIRMED = "pair_confirmed"
    PAIRED = "paired"
    FAILED = "failed"


class PairingSender(Protocol):
    """Node channel the state machine talks through."""

    def next_id(self) -> str: ...

    async def send_node(self, item: Node) -> None: ...

    async def send_iq(self, request: Node, *, timeout: float | None = None) -> Node: ...


@dataclass(slots=True)
class PairingSession:
    """Material for one pairing attempt."""

    identity: DeviceIdentity
    server_static: bytes
    refs: list[str] = field(default_factory=lambda: [])
    ref_index: int = 0
    rotations: int = 0

    def qr_codes(self) -> tuple[str, ...]:
        return tuple(
            make_qr_code(ref, self.identity) for ref in self.refs[self.ref_index :]
        )


def make_qr_code(ref: str, identity: DeviceIdentity) -> str:
    """QR payload: ref,noise public,identity public,adv secret."""
    parts = (
        identity.noise_key.public,
        identity.identity_key.public,
        identity.adv_secret,
    )
    return ",".join([ref, *(base64.b64encode(part).decode("ascii") for part in parts)])


# -------------------------------------------------------------------------
# Device identity verification
# -------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class VerifiedDeviceIdentity:
    """Countersigned device identity ready for confirmation."""

    signed: bytes
    key_index: int


def verify_device_identity(
    container: bytes,
    *,
    adv_secret: bytes,
    ref: str,
    server_static: bytes,
    identity: DeviceIdentity,
) -> VerifiedDeviceIdentity:
    """Verify the pair-success device identity and add the device signature.

    Raises:
        PairingSignatureError: HMAC or account signature mismatch.
        FormatError: a protobuf layer does not parse.
    """
    wrapper = parse_message(DeviceIdentityHmac, container)
    expected = hmac.new(adv_secret, wrapper.details, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, wrapper.hmac):
        raise PairingSignatureError("device identity HMAC mismatch")

    signed = parse_message(SignedDeviceIdentity, wrapper.details)
    identity_public = identity.identity_key.public
    account_message = (
        ACCOUNT_SIGNATURE_PREFIX
        + signed.details
        + ref.encode("utf-8")
        + server_static
        + identity_public
    )
    if not verify_signature(
        signed.account_signature_key, signed.account_signature, account_message
    ):
        raise PairingSignatureError("account signature does not verify")

    details = parse_message(DeviceIdentityDetails, signed.details)
    signed.device_signature = identity.identity_key.sign(
        DEVICE_SIGNATURE_PREFIX
        + signed.details
        + identity_public
        + signed.account_signature_key
    )
    return VerifiedDeviceIdentity(
        signed=serialize_message(signed), key_index=details.key_index
    )


# -------------------------------------------------------------------------
# State machine
# -------------------------------------------------------------------------


class PairingStateMachine:
    """Drives one pairing attempt over an established transport.

    Usage:
        pairing = PairingStateMachine(manager, store, identity, server_static, emit)
        await pairing.start()
        ...  # the manager routes pair-device / pair-success IQs here
        await pairing.close()
    """

    def __init__(
        self,
        sender: PairingSender,
        store: Store,
        identity: DeviceIdentity,
        server_static: bytes,
        emit: Callable[[Event], Awaitable[None]],
        *,
        code_ttl: float = 20.0,
        max_rotations: int = 5,
        on_finished: Callable[[PairingState], Awaitable[None] | None] | None = None,
    ) -> None:
        self._sender = sender
        self._store = store
        self._emit = emit
        self._code_ttl = code_ttl
        self._max_rotations = max_rotations
        self._on_finished = on_finished

        self._session: PairingSession | None = PairingSession(
            identity=identity, server_static=server_static
        )
        self._state = PairingState.AWAITING_QR
        self._rotation_task: asyncio.Task[None] | None = None
        self._result: DeviceIdentity | None = None

    @property
    def state(self) -> PairingState:
        return self._state

    @property
    def result(self) -> DeviceIdentity | None:
        """The persisted identity once PAIRED."""
        return self._result

    @property
    def is_finished(self) -> bool:
        return self._state in (PairingState.PAIRED, PairingState.FAILED)

    def _set_state(self, state: PairingState) -> None:
        if self._state != state:
            _LOGGER.debug("[unpaired] Pairing: %s → %s", self._state.value, state.value)
            self._state = state

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Request reference codes and display the first one."""
        if self._state is not PairingState.AWAITING_QR:
            raise ProtocolError(f"pairing already started (state {self._state.value})")
        try:
            refs = await self._request_refs()
        except MdLinkError as err:
            await self._fail(err)
            return
        await self._show_refs(refs)

    async def handle_pair_device(self, iq: Node) -> None:
        """Server-pushed codes: acknowledge, then display them."""
        await self._sender.send_node(build_iq_result(iq))
        if self.is_finished or self._state is PairingState.PAIR_REQUESTED:
            return
        pair_device = iq.get_child("pair-device")
        refs = parse_pair_device_refs(pair_device) if pair_device else []
        if not refs:
            _LOGGER.warning("[unpaired] pair-device push without codes")
            return
        await self._show_refs(refs)

    async def handle_pair_success(self, iq: Node) -> None:
        """Verify, confirm and persist the identity from a pair-success IQ."""
        session = self._session
        if session is None or self.is_finished:
            _LOGGER.warning("[unpaired] pair-success outside an active pairing")
            return

        self._set_state(PairingState.PAIR_REQUESTED)
        self._cancel_rotation()
        jid: JID | None = None
        try:
            pair_success = iq.get_child("pair-success")
            if pair_success is None:
                raise ProtocolError("pair-success IQ has no pair-success child")
            jid, lid, platform, business = _parse_pair_success(pair_success)

            ref_node = pair_success.get_child("ref")
            ref = ref_node.data.decode("utf-8", "replace") if ref_node and ref_node.data else ""
            if ref not in session.refs:
                raise PairingError("pair-success references an unknown code")
            identity_node = pair_success.get_child("device-identity")
            if identity_node is None or identity_node.data is None:
                raise ProtocolError("pair-success has no device identity")

            verified = verify_device_identity(
                identity_node.data,
                adv_secret=session.identity.adv_secret,
                ref=ref,
                server_static=session.server_static,
                identity=session.identity,
            )

            await self._sender.send_node(build_iq_result(iq))
            await self._sender.send_iq(
                build_pair_device_sign(
                    self._sender.next_id(), verified.key_index, verified.signed
                )
            )
            self._set_state(PairingState.PAIR_CONFIRMED)

            paired = replace(
                session.identity,
                jid=jid,
                lid=lid,
                account=verified.signed,
                platform=platform,
                business_name=business,
            )
            async with self._store.identity_lock():
                await self._store.put_identity(paired)
        except (MdLinkError, ValueError) as err:
            await self._fail(err, jid)
            return

        self._result = paired
        self._session = None
        self._set_state(PairingState.PAIRED)
        _LOGGER.info("[%s] Pairing complete (platform %s)", jid, platform or "unknown")
        await self._emit(
            PairSuccess(identity=paired, jid=jid, business_name=business, platform=platform)
        )
        await self._notify_finished()

    async def close(self) -> None:
        """Stop rotating codes and drop the pairing material."""
        self._cancel_rotation()
        self._session = None
        if not self.is_finished:
            self._set_state(PairingState.FAILED)

    # -------------------------------------------------------------------------
    # Internal: Codes
    # -------------------------------------------------------------------------

    async def _request_refs(self) -> list[str]:
        response = await self._sender.send_iq(
            build_pair_device_request(self._sender.next_id())
        )
        pair_device = response.get_child("pair-device")
        refs = parse_pair_device_refs(pair_device) if pair_device else []
        if not refs:
            raise ProtocolError("server returned no pairing codes")
        return refs

    async def _show_refs(self, refs: list[str]) -> None:
        session = self._session
        if session is None:
            return
        session.refs = refs
        session.ref_index = 0
        self._set_state(PairingState.QR_DISPLAYED)
        await self._emit(Qr(codes=session.qr_codes()))
        if self._rotation_task is None:
            self._rotation_task = asyncio.create_task(self._rotation_loop())

    async def _rotation_loop(self) -> None:
        try:
            while self._session is not None:
                await asyncio.sleep(self._code_ttl)
                session = self._session
                if session is None or self._state is not PairingState.QR_DISPLAYED:
                    return
                if session.rotations >= self._max_rotations:
                    _LOGGER.warning(
                        "[unpaired] No scan after %d code rotations", session.rotations
                    )
                    self._rotation_task = None
                    await self._fail(
                        PairingTimeout(f"no scan after {session.rotations} rotations")
                    )
                    return
                session.rotations += 1
                if session.ref_index + 1 < len(session.refs):
                    session.ref_index += 1
                else:
                    session.refs = await self._request_refs()
                    session.ref_index = 0
                _LOGGER.debug("[unpaired] Rotated pairing code (%d)", session.rotations)
                await self._emit(Qr(codes=session.qr_codes()))
        except asyncio.CancelledError:
            _LOGGER.debug("[unpaired] Code rotation cancelled")
            raise
        except MdLinkError as err:
            self._rotation_task = None
            await self._fail(err)

    def _cancel_rotation(self) -> None:
        task = self._rotation_task
        self._rotation_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # -------------------------------------------------------------------------
    # Internal: Outcome
    # -------------------------------------------------------------------------

    async def _fail(self, err: Exception, jid: JID | None = None) -> None:
        if self.is_finished:
            return
        self._cancel_rotation()
        self._session = None
        self._set_state(PairingState.FAILED)
        _LOGGER.error("[unpaired] Pairing failed: %s", err)
        await self._emit(PairError(jid=jid, error=err))
        await self._notify_finished()

    async def _notify_finished(self) -> None:
        if self._on_finished is None:
            return
        result = self._on_finished(self._state)
        if inspect.isawaitable(result):
            await result


def _parse_pair_success(pair_success: Node) -> tuple[JID, JID | None, str, str]:
    device = pair_success.get_child("device")
    if device is None or "jid" not in device.attrs:
        raise ProtocolError("pair-success has no device jid")
    jid = JID.parse(device.attrs["jid"])
    lid = JID.parse(device.attrs["lid"]) if device.attrs.get("lid") else None

    platform_node = pair_success.get_child("platform")
    platform = platform_node.attrs.get("name", "") if platform_node else ""
    biz_node = pair_success.get_child("biz")
    business = biz_node.attrs.get("name", "") if biz_node else ""
    return jid, lid, platform, business


