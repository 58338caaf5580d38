"""Protocol Buffer schemas for handshake and device-identity payloads.

The schemas are declared as a FileDescriptorProto and loaded into a private
descriptor pool, so no generated _pb2 module is needed and several versions
of the package can coexist in one interpreter.

Architectural boundary: pure serialization, no protocol decisions.
"""

from __future__ import annotations

from typing import Any, Final, TypeVar

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError, Message

from .errors import FormatError


_PACKAGE: Final = "mdlink"
_F = descriptor_pb2.FieldDescriptorProto

_BYTES = _F.TYPE_BYTES
_STRING = _F.TYPE_STRING
_UINT32 = _F.TYPE_UINT32
_UINT64 = _F.TYPE_UINT64
_BOOL = _F.TYPE_BOOL
_MESSAGE = _F.TYPE_MESSAGE

# (field number, field name, field type, message type name or None)
_SCHEMAS: Final[dict[str, tuple[tuple[int, str, int, str | None], ...]]] = {
    "ClientHello": (
        (1, "ephemeral", _BYTES, None),
        (2, "static", _BYTES, None),
        (3, "payload", _BYTES, None),
    ),
    "ServerHello": (
        (1, "ephemeral", _BYTES, None),
        (2, "static", _BYTES, None),
        (3, "payload", _BYTES, None),
    ),
    "ClientFinish": (
        (1, "static", _BYTES, None),
        (2, "payload", _BYTES, None),
    ),
    "HandshakeMessage": (
        (2, "client_hello", _MESSAGE, "ClientHello"),
        (3, "server_hello", _MESSAGE, "ServerHello"),
        (4, "client_finish", _MESSAGE, "ClientFinish"),
    ),
    "CertDetails": (
        (1, "serial", _UINT32, None),
        (2, "issuer_serial", _UINT32, None),
        (3, "key", _BYTES, None),
        (4, "not_before", _UINT64, None),
        (5, "not_after", _UINT64, None),
    ),
    "NoiseCertificate": (
        (1, "details", _BYTES, None),
        (2, "signature", _BYTES, None),
    ),
    "CertChain": (
        (1, "leaf", _MESSAGE, "NoiseCertificate"),
        (2, "intermediate", _MESSAGE, "NoiseCertificate"),
    ),
    "UserAgent": (
        (1, "platform", _STRING, None),
        (2, "app_version", _STRING, None),
        (3, "os_version", _STRING, None),
        (4, "manufacturer", _STRING, None),
        (5, "device", _STRING, None),
        (6, "locale_language", _STRING, None),
        (7, "locale_country", _STRING, None),
    ),
    "DevicePairingRegistrationData": (
        (1, "e_regid", _BYTES, None),
        (2, "e_keytype", _BYTES, None),
        (3, "e_ident", _BYTES, None),
        (4, "e_skey_id", _BYTES, None),
        (5, "e_skey_val", _BYTES, None),
        (6, "e_skey_sig", _BYTES, None),
        (7, "build_hash", _BYTES, None),
        (8, "device_props", _BYTES, None),
    ),
    "ClientPayload": (
        (1, "username", _UINT64, None),
        (3, "passive", _BOOL, None),
        (5, "user_agent", _MESSAGE, "UserAgent"),
        (7, "push_name", _STRING, None),
        (18, "device", _UINT32, None),
        (19, "device_pairing_data", _MESSAGE, "DevicePairingRegistrationData"),
        (33, "pull", _BOOL, None),
    ),
    "DeviceIdentityHmac": (
        (1, "details", _BYTES, None),
        (2, "hmac", _BYTES, None),
    ),
    "SignedDeviceIdentity": (
        (1, "details", _BYTES, None),
        (2, "account_signature_key", _BYTES, None),
        (3, "account_signature", _BYTES, None),
        (4, "device_signature", _BYTES, None),
    ),
    "DeviceIdentityDetails": (
        (1, "raw_id", _UINT32, None),
        (2, "timestamp", _UINT64, None),
        (3, "key_index", _UINT32, None),
    ),
}


def _build_file() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_proto.name = "mdlink/handshake.proto"
    file_proto.package = _PACKAGE
    file_proto.syntax = "proto2"
    for message_name, fields in _SCHEMAS.items():
        message_proto = file_proto.message_type.add()
        message_proto.name = message_name
        for number, field_name, field_type, type_name in fields:
            field = message_proto.field.add()
            field.name = field_name
            field.number = number
            field.label = _F.LABEL_OPTIONAL
            field.type = field_type
            if type_name is not None:
                field.type_name = f".{_PACKAGE}.{type_name}"
    return file_proto


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_build_file().SerializeToString())


def _message_class(name: str) -> Any:
    return message_factory.GetMessageClass(
        _POOL.FindMessageTypeByName(f"{_PACKAGE}.{name}")
    )


HandshakeMessage = _message_class("HandshakeMessage")
ClientHello = _message_class("ClientHello")
ServerHello = _message_class("ServerHello")
ClientFinish = _message_class("ClientFinish")
CertDetails = _message_class("CertDetails")
NoiseCertificate = _message_class("NoiseCertificate")
CertChain = _message_class("CertChain")
UserAgent = _message_class("UserAgent")
DevicePairingRegistrationData = _message_class("DevicePairingRegistrationData")
ClientPayload = _message_class("ClientPayload")
DeviceIdentityHmac = _message_class("DeviceIdentityHmac")
SignedDeviceIdentity = _message_class("SignedDeviceIdentity")
DeviceIdentityDetails = _message_class("DeviceIdentityDetails")

MessageT = TypeVar("MessageT", bound=Message)


def serialize_message(message: Message) -> bytes:
    """Serialize a protobuf message to bytes."""
    data: bytes = message.SerializeToString()
    return data


def parse_message(message_class: type[MessageT], data: bytes) -> MessageT:
    """Parse bytes into a new message of message_class.

    Raises:
        FormatError: data is not a valid encoding of the message.
    """
    message = message_class()
    try:
        message.ParseFromString(data)
    except DecodeError as err:
        raise FormatError(
            f"invalid {get_message_type(message)} payload ({len(data)} bytes)"
        ) from err
    return message


def get_message_type(message: Message) -> str:
    """Return the short schema name of a message, e.g. "CertChain"."""
    name: str = message.DESCRIPTOR.name
    return name
