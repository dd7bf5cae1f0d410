"""Classic pcap file reading and Ethernet/IPv6/TCP/UDP header decoding."""

from __future__ import annotations

import enum
import struct
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import ClassVar

ETHERTYPE_IPV6 = 0x86DD
IPPROTO_TCP = 6
IPPROTO_UDP = 17

_PCAP_MAGIC_USEC = 0xA1B2C3D4
_PCAP_MAGIC_NSEC = 0xA1B23C4D
_GLOBAL_HEADER_SIZE = 24
_RECORD_HEADER_SIZE = 16


class PacketError(Exception):
    """Raised when a capture file or a packet header cannot be decoded."""


def _require(buffer: bytes, offset: int, size: int, what: str) -> None:
    if offset < 0 or offset + size > len(buffer):
        raise PacketError(
            f"{what}: need {size} bytes at offset {offset}, buffer holds {len(buffer)}"
        )


def read_uint16(data: bytes) -> int:
    """Decode a big-endian 16-bit unsigned integer from the first two bytes."""
    _require(data, 0, 2, "read_uint16")
    return (data[0] << 8) | data[1]


def read_uint24(data: bytes) -> int:
    """Decode a big-endian 24-bit unsigned integer from the first three bytes."""
    _require(data, 0, 3, "read_uint24")
    return (data[0] << 16) | (data[1] << 8) | data[2]


@dataclass(frozen=True)
class PcapRecord:
    """One captured packet: its timestamp, original wire length and captured bytes."""

    timestamp: timedelta
    length: int
    data: bytes


def _pcap_byte_order(magic: bytes) -> tuple[str, bool]:
    for order in ("<", ">"):
        (value,) = struct.unpack(order + "I", magic)
        if value == _PCAP_MAGIC_USEC:
            return order, False
        if value == _PCAP_MAGIC_NSEC:
            return order, True
    raise PacketError(f"pcap_open: unknown file format (magic {magic.hex()})")


def _iter_records(content: bytes, order: str, nanoseconds: bool) -> Iterator[PcapRecord]:
    record_struct = struct.Struct(order + "IIII")
    offset = _GLOBAL_HEADER_SIZE
    while offset < len(content):
        if offset + _RECORD_HEADER_SIZE > len(content):
            raise PacketError("pcap_loop: truncated record header")
        ts_sec, ts_frac, caplen, origlen = record_struct.unpack_from(content, offset)
        offset += _RECORD_HEADER_SIZE
        if offset + caplen > len(content):
            raise PacketError("pcap_loop: truncated packet data")
        micros = ts_frac // 1000 if nanoseconds else ts_frac
        yield PcapRecord(
            timestamp=timedelta(seconds=ts_sec, microseconds=micros),
            length=origlen,
            data=content[offset : offset + caplen],
        )
        offset += caplen


def read_pcap(path: str | Path) -> Iterator[PcapRecord]:
    """Open a classic pcap file and return an iterator over its records.

    The file header is checked immediately, so a missing or malformed file
    raises PacketError here rather than on first iteration.
    """
    try:
        content = Path(path).read_bytes()
    except OSError as error:
        raise PacketError(f"pcap_open: error:{error}") from error
    if len(content) < _GLOBAL_HEADER_SIZE:
        raise PacketError("pcap_open: truncated dump file")
    order, nanoseconds = _pcap_byte_order(content[:4])
    return _iter_records(content, order, nanoseconds)


class IpProto(enum.Enum):
    """Transport protocol carried by an IPv6 packet."""

    TCP = IPPROTO_TCP
    UDP = IPPROTO_UDP
    UNSUPPORTED = -1


@dataclass(frozen=True)
class EtherHeader:
    """Ethernet II frame header."""

    SIZE: ClassVar[int] = 14

    destination: bytes
    source: bytes
    ether_type: int

    @classmethod
    def from_bytes(cls, buffer: bytes, offset: int = 0) -> EtherHeader:
        _require(buffer, offset, cls.SIZE, "ether-header")
        dst = bytes(buffer[offset : offset + 6])
        src = bytes(buffer[offset + 6 : offset + 12])
        (ether_type,) = struct.unpack_from("!H", buffer, offset + 12)
        return cls(destination=dst, source=src, ether_type=ether_type)

    @property
    def size(self) -> int:
        return self.SIZE


@dataclass(frozen=True)
class Ip6Header:
    """Fixed IPv6 header."""

    SIZE: ClassVar[int] = 40

    payload_length: int
    next_header: int
    hop_limit: int
    source: bytes
    destination: bytes

    @classmethod
    def from_bytes(cls, buffer: bytes, offset: int = 0) -> Ip6Header:
        _require(buffer, offset, cls.SIZE, "ip6-header")
        _flow, plen, nxt, hlim = struct.unpack_from("!IHBB", buffer, offset)
        return cls(
            payload_length=plen,
            next_header=nxt,
            hop_limit=hlim,
            source=bytes(buffer[offset + 8 : offset + 24]),
            destination=bytes(buffer[offset + 24 : offset + 40]),
        )

    @property
    def proto(self) -> IpProto:
        try:
            return IpProto(self.next_header)
        except ValueError:
            return IpProto.UNSUPPORTED

    @property
    def size(self) -> int:
        return self.SIZE


@dataclass(frozen=True)
class TcpHeader:
    """TCP header; ``length`` includes options (4 * data offset)."""

    SIZE: ClassVar[int] = 20
    FIN: ClassVar[int] = 0x01
    SYN: ClassVar[int] = 0x02
    ACK: ClassVar[int] = 0x10

    source_port: int
    destination_port: int
    seq: int
    ack_seq: int
    data_offset: int
    flags: int
    window: int

    @classmethod
    def from_bytes(cls, buffer: bytes, offset: int = 0) -> TcpHeader:
        _require(buffer, offset, cls.SIZE, "tcp-header")
        src, dst, seq, ack_seq, doff_byte, flags, window = struct.unpack_from(
            "!HHIIBBH", buffer, offset
        )
        return cls(
            source_port=src,
            destination_port=dst,
            seq=seq,
            ack_seq=ack_seq,
            data_offset=doff_byte >> 4,
            flags=flags,
            window=window,
        )

    @property
    def size(self) -> int:
        return self.SIZE

    @property
    def length(self) -> int:
        return 4 * self.data_offset

    @property
    def fin(self) -> bool:
        return bool(self.flags & self.FIN)

    @property
    def syn(self) -> bool:
        return bool(self.flags & self.SYN)

    @property
    def ack(self) -> bool:
        return bool(self.flags & self.ACK)


@dataclass(frozen=True)
class UdpHeader:
    """UDP header."""

    SIZE: ClassVar[int] = 8

    source_port: int
    destination_port: int
    length: int
    checksum: int

    @classmethod
    def from_bytes(cls, buffer: bytes, offset: int = 0) -> UdpHeader:
        _require(buffer, offset, cls.SIZE, "udp-header")
        src, dst, length, checksum = struct.unpack_from("!HHHH", buffer, offset)
        return cls(source_port=src, destination_port=dst, length=length, checksum=checksum)

    @property
    def size(self) -> int:
        return self.SIZE