"""Tests for DeviceIdentity and the in-memory store."""

from __future__ import annotations

from dataclasses import replace

import pytest

from mdlink.keys import generate_prekeys, generate_signed_prekey
from mdlink.store import DeviceIdentity, MemoryStore, Session, Store


class TestDeviceIdentity:
    """Tests for DeviceIdentity."""

    def test_generate_is_unpaired(self):
        """Test that fresh material is unpaired and self-consistent."""
        identity = DeviceIdentity.generate()
        assert not identity.is_paired
        assert len(identity.adv_secret) == 32
        assert identity.signed_prekey.verify(identity.identity_key.public)

    def test_with_helpers_return_copies(self):
        """Test that updates produce new instances."""
        identity = DeviceIdentity.generate()
        signed = generate_signed_prekey(identity.identity_key, 2)
        rotated = identity.with_signed_prekey(signed)
        assert rotated.signed_prekey == signed
        assert identity.signed_prekey != signed
        assert identity.with_next_prekey_id(40).next_prekey_id == 40

    def test_frozen(self):
        """Test that identities are immutable."""
        identity = DeviceIdentity.generate()
        with pytest.raises(AttributeError):
            identity.platform = "android"  # type: ignore[misc]

    def test_repr_hides_secrets(self):
        """Test that secret material never appears in the repr."""
        identity = replace(DeviceIdentity.generate(), account=b"\xaa" * 16)
        text = repr(identity)
        assert repr(identity.adv_secret) not in text
        assert repr(identity.account) not in text
        assert repr(identity.signed_prekey.signature) not in text
        assert identity.noise_key.private.hex() not in text
        assert "registration_id" in text


class TestMemoryStore:
    """Tests for MemoryStore."""

    def test_is_store(self):
        """Test that MemoryStore implements the Store contract."""
        assert isinstance(MemoryStore(), Store)

    @pytest.mark.asyncio
    async def test_identity_round_trip(self):
        """Test storing, loading and deleting the identity."""
        store = MemoryStore()
        assert await store.get_identity() is None
        identity = DeviceIdentity.generate()
        await store.put_identity(identity)
        assert await store.get_identity() == identity
        await store.delete_identity()
        assert await store.get_identity() is None

    @pytest.mark.asyncio
    async def test_sessions(self):
        """Test per-peer session records."""
        store = MemoryStore()
        session = Session(peer="123@s.whatsapp.net", record=b"state")
        await store.put_session(session.peer, session)
        assert await store.get_session(session.peer) == session
        assert await store.get_session("other@s.whatsapp.net") is None

    @pytest.mark.asyncio
    async def test_prekeys(self):
        """Test prekey listing and removal."""
        store = MemoryStore()
        await store.put_prekeys(generate_prekeys(5, 3))
        assert [p.key_id for p in await store.list_prekeys()] == [5, 6, 7]
        await store.remove_prekey(6)
        await store.remove_prekey(99)
        assert [p.key_id for p in await store.list_prekeys()] == [5, 7]

    @pytest.mark.asyncio
    async def test_delete_identity_clears_everything(self):
        """Test that logging out removes sessions and prekeys too."""
        store = MemoryStore(DeviceIdentity.generate())
        await store.put_session("peer", Session(peer="peer", record=b""))
        await store.put_prekeys(generate_prekeys(1, 2))
        await store.delete_identity()
        assert await store.get_session("peer") is None
        assert await store.list_prekeys() == []

    @pytest.mark.asyncio
    async def test_independent_instances(self):
        """Test that two stores do not share state."""
        first, second = MemoryStore(), MemoryStore()
        await first.put_identity(DeviceIdentity.generate())
        assert await second.get_identity() is None
        assert first.identity_lock() is not second.identity_lock()
