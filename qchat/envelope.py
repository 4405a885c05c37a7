"""Envelope framing for the wire.

Every frame starts with a fixed header::

    [0-2]   magic b"PQM"
    [3]     version (0x01)
    [4]     frame type (0x01 envelope, 0x02 announce)

Envelope body::

    [5]     AEAD algorithm tag
    [6-13]  timestamp, milliseconds since epoch (u64 big-endian)
    then, each prefixed by a u32 big-endian length:
            sender, recipient, iv, ciphertext, encapsulated_key, proof, signature

Announce body::

    [5-12]  timestamp, milliseconds since epoch (u64 big-endian)
    then, each prefixed by a u32 big-endian length:
            did, signature algorithm, signing public key, signature

An announce with an empty signature is unauthenticated; relays refuse it.

Frames are self-describing; trailing bytes are an error.
"""
import enum
import struct
import hashlib
from dataclasses import dataclass
from typing import List, Tuple, Union

from qchat.errors import ProtocolError

MAGIC = b"PQM"
PROTOCOL_VERSION = 1
HEADER_SIZE = len(MAGIC) + 2
MAX_FIELD_SIZE = 1 << 24

_LEN = struct.Struct(">I")
_ENVELOPE_HEAD = struct.Struct(">BQ")
_TIMESTAMP = struct.Struct(">Q")


class FrameType(enum.IntEnum):
    ENVELOPE = 1
    ANNOUNCE = 2


class AlgTag(enum.IntEnum):
    """AEAD scheme used for the ciphertext."""
    AES_256_GCM = 1
    CHACHA20_POLY1305 = 2

    @property
    def iv_size(self) -> int:
        return AEAD_IV_SIZES[self]

    @classmethod
    def from_name(cls, name: str) -> "AlgTag":
        key = name.upper().replace("-", "_")
        try:
            return cls[key]
        except KeyError:
            raise ValueError(
                f"Unsupported AEAD: {name}. "
                f"Must be one of: {', '.join(t.name.replace('_', '-') for t in cls)}"
            )


AEAD_IV_SIZES = {
    AlgTag.AES_256_GCM: 12,
    AlgTag.CHACHA20_POLY1305: 12,
}


@dataclass(frozen=True)
class Envelope:
    """Signed, encrypted unit exchanged between peers."""
    iv: bytes
    ciphertext: bytes
    encapsulated_key: bytes
    alg_tag: AlgTag = AlgTag.AES_256_GCM
    sender: str = ""
    recipient: str = ""
    timestamp: int = 0
    proof: bytes = b""
    signature: bytes = b""

    def core(self) -> bytes:
        """Canonical bytes covered by the signature."""
        return envelope_core(self)

    def fingerprint(self) -> str:
        return fingerprint(encode_envelope(self))


@dataclass(frozen=True)
class Announce:
    """Subscription handshake: tells the relay which DID this connection serves.

    A signed announce carries the signing public key the DID was derived from
    and a signature over `core()`.
    """
    did: str
    timestamp: int = 0
    sig_algorithm: str = ""
    public_key: bytes = b""
    signature: bytes = b""

    def core(self) -> bytes:
        return announce_core(self)


Frame = Union[Envelope, Announce]


def _lp(value: bytes) -> bytes:
    return _LEN.pack(len(value)) + value


def _header(frame_type: FrameType) -> bytes:
    return MAGIC + bytes([PROTOCOL_VERSION, frame_type])


def associated_data(alg_tag: AlgTag) -> bytes:
    """AEAD associated data: binds the ciphertext to the framing version and scheme."""
    return MAGIC + bytes([PROTOCOL_VERSION, alg_tag])


def envelope_core(envelope: Envelope) -> bytes:
    """Header, routing fields, iv, ciphertext and encapsulated key, length-prefixed."""
    return (
        _header(FrameType.ENVELOPE)
        + _ENVELOPE_HEAD.pack(envelope.alg_tag, envelope.timestamp)
        + _lp(envelope.sender.encode("utf-8"))
        + _lp(envelope.recipient.encode("utf-8"))
        + _lp(envelope.iv)
        + _lp(envelope.ciphertext)
        + _lp(envelope.encapsulated_key)
    )


def encode_envelope(envelope: Envelope) -> bytes:
    """Encode an envelope to bytes."""
    return envelope_core(envelope) + _lp(envelope.proof) + _lp(envelope.signature)


def announce_core(announce: Announce) -> bytes:
    """Header, timestamp, DID, algorithm and public key, length-prefixed."""
    return (
        _header(FrameType.ANNOUNCE)
        + _TIMESTAMP.pack(announce.timestamp)
        + _lp(announce.did.encode("utf-8"))
        + _lp(announce.sig_algorithm.encode("utf-8"))
        + _lp(announce.public_key)
    )


def encode_announce(announce: Union[Announce, str]) -> bytes:
    """Encode an announce frame. A bare DID gives an unsigned announce."""
    if isinstance(announce, str):
        announce = Announce(did=announce)
    return announce_core(announce) + _lp(announce.signature)


def fingerprint(raw: bytes) -> str:
    """Dedup key for a raw frame."""
    return hashlib.sha256(raw).hexdigest()


class _Reader:
    def __init__(self, data: bytes, offset: int):
        self.data = data
        self.offset = offset

    def take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self.data):
            raise ProtocolError(
                f"Truncated frame: need {size} bytes at offset {self.offset}, have {len(self.data) - self.offset}"
            )
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def field(self) -> bytes:
        (size,) = _LEN.unpack(self.take(_LEN.size))
        if size > MAX_FIELD_SIZE:
            raise ProtocolError(f"Field length {size} exceeds limit")
        return self.take(size)

    def text(self) -> str:
        try:
            return self.field().decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError("Identifier is not valid UTF-8") from e

    def finish(self) -> None:
        if self.offset != len(self.data):
            raise ProtocolError(f"{len(self.data) - self.offset} trailing bytes after frame")


def _parse_header(data: bytes) -> Tuple[FrameType, _Reader]:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise ProtocolError(f"Frame must be bytes, got {type(data).__name__}")
    data = bytes(data)
    if len(data) < HEADER_SIZE:
        raise ProtocolError(f"Data too short: {len(data)} bytes (minimum {HEADER_SIZE})")
    if data[:len(MAGIC)] != MAGIC:
        raise ProtocolError("Bad magic")
    version = data[3]
    if version != PROTOCOL_VERSION:
        raise ProtocolError(f"Unknown version: {version}")
    try:
        frame_type = FrameType(data[4])
    except ValueError:
        raise ProtocolError(f"Unknown frame type: {data[4]}")
    return frame_type, _Reader(data, HEADER_SIZE)


def decode_envelope(data: bytes) -> Envelope:
    """Decode bytes into an envelope.

    Raises:
        ProtocolError: If the data is not a well-formed envelope frame
    """
    frame = decode_frame(data)
    if not isinstance(frame, Envelope):
        raise ProtocolError("Frame is not an envelope")
    return frame


def decode_frame(data: bytes) -> Frame:
    """Decode any frame type.

    Raises:
        ProtocolError: If data is invalid
    """
    frame_type, reader = _parse_header(data)

    if frame_type == FrameType.ANNOUNCE:
        (timestamp,) = _TIMESTAMP.unpack(reader.take(_TIMESTAMP.size))
        did = reader.text()
        sig_algorithm = reader.text()
        public_key = reader.field()
        signature = reader.field()
        reader.finish()
        if not did:
            raise ProtocolError("Announce frame without DID")
        return Announce(did=did, timestamp=timestamp, sig_algorithm=sig_algorithm,
                        public_key=public_key, signature=signature)

    tag_value, timestamp = _ENVELOPE_HEAD.unpack(reader.take(_ENVELOPE_HEAD.size))
    try:
        alg_tag = AlgTag(tag_value)
    except ValueError:
        raise ProtocolError(f"Unknown algorithm tag: {tag_value}")

    fields: List[bytes] = []
    sender = reader.text()
    recipient = reader.text()
    for _ in range(5):
        fields.append(reader.field())
    reader.finish()

    iv, ciphertext, encapsulated_key, proof, signature = fields
    if len(iv) != alg_tag.iv_size:
        raise ProtocolError(f"IV length {len(iv)} does not match {alg_tag.name} ({alg_tag.iv_size})")

    return Envelope(
        iv=iv,
        ciphertext=ciphertext,
        encapsulated_key=encapsulated_key,
        alg_tag=alg_tag,
        sender=sender,
        recipient=recipient,
        timestamp=timestamp,
        proof=proof,
        signature=signature,
    )
