"""Tests for the noise handshake and certificate chain verification."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import patch

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from mdlink.binary import node
from mdlink.errors import CertificateError, CryptoError, ProtocolError
from mdlink.keys import KeyPair, SigningKeyPair
from mdlink.transport.framing import FrameTransport
from mdlink.transport.noise import (
    NOISE_MODE,
    CipherState,
    EphemeralKey,
    HandshakeState,
    NoiseHandshake,
    SymmetricState,
    verify_cert_chain,
)

from .conftest import NoiseResponder, make_cert_chain, make_pipe


async def _run_handshake(root_key, server_static, cert_payload, **responder_kwargs):
    client, server = make_pipe()
    transport = FrameTransport(client)
    static_key = KeyPair.generate()
    handshake = NoiseHandshake(transport, static_key, root_key.public)
    responder = NoiseResponder(server, server_static, cert_payload, **responder_kwargs)
    server_task = asyncio.create_task(responder.run())
    try:
        keys = await handshake.perform(b"client payload")
    except BaseException:
        await transport.close()
        server_task.cancel()
        await asyncio.gather(server_task, return_exceptions=True)
        raise
    await server_task
    return transport, handshake, keys, responder, static_key


class TestCipherState:
    """Tests for CipherState nonce handling."""

    def test_round_trip_advances_nonce(self):
        """Test that each successful operation uses the next nonce."""
        sender, receiver = CipherState(b"k" * 32), CipherState(b"k" * 32)
        first = sender.encrypt_with_ad(b"ad", b"one")
        second = sender.encrypt_with_ad(b"ad", b"two")
        assert sender.nonce == 2
        assert receiver.decrypt_with_ad(b"ad", first) == b"one"
        assert receiver.decrypt_with_ad(b"ad", second) == b"two"
        assert receiver.nonce == 2

    def test_failed_decrypt_keeps_nonce(self):
        """Test that the counter does not advance on an authentication failure."""
        sender, receiver = CipherState(b"k" * 32), CipherState(b"k" * 32)
        ciphertext = sender.encrypt_with_ad(b"", b"payload")
        tampered = bytes([ciphertext[0] ^ 0x01]) + ciphertext[1:]
        with pytest.raises(CryptoError):
            receiver.decrypt_with_ad(b"", tampered)
        assert receiver.nonce == 0
        assert receiver.decrypt_with_ad(b"", ciphertext) == b"payload"

    def test_replayed_ciphertext_rejected(self):
        """Test that a ciphertext only opens under its own nonce."""
        sender, receiver = CipherState(b"k" * 32), CipherState(b"k" * 32)
        ciphertext = sender.encrypt_with_ad(b"", b"payload")
        receiver.decrypt_with_ad(b"", ciphertext)
        with pytest.raises(CryptoError):
            receiver.decrypt_with_ad(b"", ciphertext)

    @settings(max_examples=40, deadline=None)
    @given(st.integers(min_value=0, max_value=6), st.integers(min_value=0, max_value=6))
    def test_only_expected_nonce_accepted(self, sealed_at, expected):
        """Test that a frame opens only under the nonce it was sealed with."""
        sender, receiver = CipherState(b"k" * 32), CipherState(b"k" * 32)
        for _ in range(sealed_at):
            sender.encrypt_with_ad(b"", b"")
        ciphertext = sender.encrypt_with_ad(b"", b"frame")
        receiver.nonce = expected
        if sealed_at == expected:
            assert receiver.decrypt_with_ad(b"", ciphertext) == b"frame"
        else:
            with pytest.raises(CryptoError):
                receiver.decrypt_with_ad(b"", ciphertext)
            assert receiver.nonce == expected

    def test_destroyed_state_unusable(self):
        """Test that destroy() makes the cipher unusable."""
        state = CipherState(b"k" * 32)
        state.destroy()
        with pytest.raises(CryptoError):
            state.encrypt_with_ad(b"", b"x")


class TestSymmetricState:
    """Tests for SymmetricState."""

    def test_short_protocol_name_is_padded(self):
        """Test that a 32-byte name is used directly as the initial hash."""
        assert SymmetricState(NOISE_MODE).handshake_hash == NOISE_MODE

    def test_split_matches_on_both_sides(self):
        """Test that two parties with the same transcript derive the same keys."""
        first, second = SymmetricState(), SymmetricState()
        for state in (first, second):
            state.mix_hash(b"prologue")
            state.mix_key(b"shared secret")
        ciphertext = first.encrypt_and_hash(b"hello")
        assert second.decrypt_and_hash(ciphertext) == b"hello"
        assert first.handshake_hash == second.handshake_hash

        initiator_send, initiator_recv = first.split()
        responder_recv, responder_send = second.split()
        assert responder_recv.decrypt_with_ad(
            b"", initiator_send.encrypt_with_ad(b"", b"up")
        ) == b"up"
        assert initiator_recv.decrypt_with_ad(
            b"", responder_send.encrypt_with_ad(b"", b"down")
        ) == b"down"


class TestVerifyCertChain:
    """Tests for verify_cert_chain()."""

    def test_valid_chain(self, root_key, server_static):
        """Test that a chain rooted in the pinned key verifies."""
        payload = make_cert_chain(root_key, server_static.public)
        leaf = verify_cert_chain(payload, server_static.public, root_key.public, time.time())
        assert leaf.key == server_static.public

    def test_wrong_root(self, server_static):
        """Test that a chain signed by another root is rejected."""
        payload = make_cert_chain(SigningKeyPair.generate(), server_static.public)
        with pytest.raises(CertificateError, match="pinned root"):
            verify_cert_chain(
                payload, server_static.public, SigningKeyPair.generate().public, time.time()
            )

    def test_leaf_for_other_key(self, root_key, server_static):
        """Test that the leaf must certify the handshake's static key."""
        payload = make_cert_chain(root_key, KeyPair.generate().public)
        with pytest.raises(CertificateError, match="static key"):
            verify_cert_chain(payload, server_static.public, root_key.public, time.time())

    def test_issuer_mismatch(self, root_key, server_static):
        """Test that the leaf issuer must be the intermediate serial."""
        payload = make_cert_chain(root_key, server_static.public, leaf_issuer_serial=99)
        with pytest.raises(CertificateError, match="issuer"):
            verify_cert_chain(payload, server_static.public, root_key.public, time.time())

    def test_expired(self, root_key, server_static):
        """Test that certificates past not_after are rejected."""
        payload = make_cert_chain(root_key, server_static.public, not_after=1000)
        with pytest.raises(CertificateError, match="expired"):
            verify_cert_chain(payload, server_static.public, root_key.public, 2000)

    def test_malformed(self, root_key, server_static):
        """Test that an unparseable payload is a CertificateError."""
        with pytest.raises(CertificateError):
            verify_cert_chain(b"\xff\xff\xff", server_static.public, root_key.public, 0)

    def test_incomplete(self, root_key, server_static):
        """Test that an empty chain is rejected."""
        with pytest.raises(CertificateError, match="incomplete"):
            verify_cert_chain(b"", server_static.public, root_key.public, 0)


class TestNoiseHandshake:
    """Tests for the initiator handshake against a scripted responder."""

    @pytest.mark.asyncio
    async def test_handshake_success(self, root_key, server_static, cert_payload):
        """Test that both sides derive matching transport keys."""
        transport, handshake, keys, responder, static_key = await _run_handshake(
            root_key, server_static, cert_payload
        )
        assert handshake.state is HandshakeState.ESTABLISHED
        assert keys.remote_static == server_static.public
        assert responder.client_static == static_key.public
        assert responder.client_payload == b"client payload"

        transport.establish(keys)
        await transport.send_node(node("ping"))
        assert (await responder.receive_node()).tag == "ping"
        await responder.send_node(node("pong", {"id": "1"}))
        assert (await transport.receive_node()).attrs == {"id": "1"}
        await transport.close()

    @pytest.mark.asyncio
    async def test_pinning_failure(self, server_static):
        """Test that a chain from an unpinned root fails the handshake."""
        pinned = SigningKeyPair.generate()
        rogue_payload = make_cert_chain(SigningKeyPair.generate(), server_static.public)
        client, server = make_pipe()
        transport = FrameTransport(client)
        handshake = NoiseHandshake(transport, KeyPair.generate(), pinned.public)
        server_task = asyncio.create_task(
            NoiseResponder(server, server_static, rogue_payload).run()
        )

        with pytest.raises(CertificateError):
            await handshake.perform(b"payload")
        assert handshake.state is HandshakeState.FAILED

        await transport.close()
        server_task.cancel()
        await asyncio.gather(server_task, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_tampered_server_ephemeral(self, root_key, server_static, cert_payload):
        """Test that a modified server ephemeral key breaks authentication."""
        with pytest.raises(CryptoError):
            await _run_handshake(
                root_key, server_static, cert_payload, tamper_ephemeral=True
            )

    @pytest.mark.asyncio
    async def test_perform_twice(self, root_key, server_static, cert_payload):
        """Test that a handshake object runs only once."""
        transport, handshake, _, _, _ = await _run_handshake(
            root_key, server_static, cert_payload
        )
        with pytest.raises(ProtocolError):
            await handshake.perform(b"again")
        await transport.close()

    @pytest.mark.asyncio
    async def test_non_server_hello_response(self, root_key):
        """Test that a response without a server hello fails the handshake."""
        client, server = make_pipe()
        transport = FrameTransport(client)
        handshake = NoiseHandshake(transport, KeyPair.generate(), root_key.public)
        # Empty HandshakeMessage: no server_hello set.
        await server.send_bytes(b"\x00\x00\x00")

        with pytest.raises(ProtocolError, match="server hello"):
            await handshake.perform(b"payload")
        assert handshake.state is HandshakeState.FAILED
        await transport.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pinned_root", [True, False])
    async def test_ephemeral_key_wiped(self, root_key, server_static, cert_payload, pinned_root):
        """Test that the ephemeral private key is zeroed on success and failure."""
        created = []
        real_generate = EphemeralKey.generate

        def tracking_generate():
            key = real_generate()
            created.append(key)
            return key

        pinned = root_key if pinned_root else SigningKeyPair.generate()
        client, server = make_pipe()
        transport = FrameTransport(client)
        handshake = NoiseHandshake(transport, KeyPair.generate(), pinned.public)
        server_task = asyncio.create_task(
            NoiseResponder(server, server_static, cert_payload).run()
        )
        with patch.object(EphemeralKey, "generate", side_effect=tracking_generate):
            if pinned_root:
                await handshake.perform(b"payload")
            else:
                with pytest.raises(CertificateError):
                    await handshake.perform(b"payload")

        assert len(created) == 1
        assert created[0].destroyed
        with pytest.raises(CryptoError):
            created[0].dh(server_static.public)

        await transport.close()
        server_task.cancel()
        await asyncio.gather(server_task, return_exceptions=True)
