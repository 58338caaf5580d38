"""Tests for protocol node builders."""

from __future__ import annotations

import hashlib
import re
from dataclasses import replace

from mdlink.binary import node
from mdlink.config import ClientConfig
from mdlink.jid import JID
from mdlink.keys import generate_prekeys
from mdlink.protobuf_util import ClientPayload, parse_message
from mdlink.protocol import (
    IdGenerator,
    build_client_payload,
    build_iq,
    build_iq_result,
    build_logout,
    build_ping,
    build_prekey_upload,
    generate_message_id,
    parse_iq_error,
    parse_pair_device_refs,
    parse_prekey_count,
)
from mdlink.store import DeviceIdentity


class TestIds:
    """Tests for id generation."""

    def test_iq_ids_unique(self):
        """Test that IQ ids share a prefix and never repeat."""
        ids = IdGenerator()
        issued = [ids.next_id() for _ in range(100)]
        assert len(set(issued)) == 100
        assert issued[0].rsplit("-", 1)[0] == issued[-1].rsplit("-", 1)[0]

    def test_message_id_format(self):
        """Test the 3EB0-prefixed uppercase hex message id."""
        message_id = generate_message_id("15551234567", now=1700000000)
        assert re.fullmatch(r"3EB0[0-9A-F]{18}", message_id)
        assert message_id != generate_message_id("15551234567", now=1700000000)


class TestIqBuilders:
    """Tests for IQ envelopes."""

    def test_build_iq(self):
        """Test the standard IQ attributes."""
        iq = build_iq("1", "md", "get", [node("pair-device")])
        assert iq.attrs == {"id": "1", "xmlns": "md", "type": "get", "to": "s.whatsapp.net"}

    def test_result_echoes_id_and_sender(self):
        """Test that results go back to the request's sender."""
        request = node("iq", {"id": "9", "from": "123@s.whatsapp.net", "type": "set"})
        assert build_iq_result(request).attrs == {
            "type": "result",
            "to": "123@s.whatsapp.net",
            "id": "9",
        }

    def test_parse_iq_error(self):
        """Test extracting the error code and text."""
        response = node(
            "iq", {"type": "error"}, [node("error", {"code": "401", "text": "not-authorized"})]
        )
        error = parse_iq_error(response)
        assert error.code == 401
        assert error.text == "not-authorized"
        assert parse_iq_error(node("iq")).code is None

    def test_ping(self):
        """Test the keepalive ping."""
        ping = build_ping("p")
        assert ping.attrs["xmlns"] == "w:p"
        assert ping.get_child("ping") is not None

    def test_logout(self):
        """Test the companion removal request."""
        jid = JID.parse("15551234567:3@s.whatsapp.net")
        remove = build_logout("l", jid).get_child("remove-companion-device")
        assert remove.attrs == {"jid": str(jid), "reason": "user_initiated"}


class TestParsers:
    """Tests for response parsers."""

    def test_pair_device_refs(self):
        """Test that refs are read in order and empty ones skipped."""
        pair_device = node(
            "pair-device",
            content=[node("ref", content=b"a"), node("ref"), node("ref", content=b"b")],
        )
        assert parse_pair_device_refs(pair_device) == ["a", "b"]

    def test_prekey_count(self):
        """Test reading the server prekey count."""
        assert parse_prekey_count(node("iq", content=[node("count", {"value": "7"})])) == 7
        assert parse_prekey_count(node("iq")) is None


class TestPrekeyUpload:
    """Tests for the prekey upload request."""

    def test_layout(self):
        """Test registration, identity, key list and signed key children."""
        identity = DeviceIdentity.generate()
        prekeys = generate_prekeys(1, 2)
        iq = build_prekey_upload(
            "u",
            identity.registration_id,
            identity.identity_key.public,
            identity.signed_prekey,
            prekeys,
        )
        assert iq.attrs["xmlns"] == "encrypt"
        assert iq.get_child("registration").data == identity.registration_id.to_bytes(4, "big")
        assert iq.get_child("type").data == b"\x05"
        keys = iq.get_child("list").get_children("key")
        assert [k.get_child("id").data for k in keys] == [b"\x00\x00\x01", b"\x00\x00\x02"]
        skey = iq.get_child("skey")
        assert skey.get_child("signature").data == identity.signed_prekey.signature


class TestClientPayload:
    """Tests for the handshake client payload."""

    def test_registration_payload(self):
        """Test that an unpaired identity registers its keys."""
        identity = DeviceIdentity.generate()
        config = ClientConfig(push_name="Desk")
        payload = parse_message(ClientPayload, build_client_payload(identity, config))

        assert not payload.HasField("username")
        assert payload.push_name == "Desk"
        registration = payload.device_pairing_data
        assert registration.e_ident == identity.identity_key.public
        assert registration.e_skey_val == identity.signed_prekey.key_pair.public
        assert registration.build_hash == hashlib.md5(
            config.user_agent.app_version.encode()
        ).digest()

    def test_login_payload(self):
        """Test that a paired identity logs in with its JID."""
        identity = replace(
            DeviceIdentity.generate(), jid=JID.parse("15551234567:3@s.whatsapp.net")
        )
        payload = parse_message(
            ClientPayload, build_client_payload(identity, ClientConfig())
        )
        assert payload.username == 15551234567
        assert payload.device == 3
        assert payload.passive
        assert not payload.HasField("device_pairing_data")
