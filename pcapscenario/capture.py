"""Walk a capture file, follow one TCP session and hand its payloads to a callback."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from datetime import timedelta
from pathlib import Path
from typing import Any

from .packets import (
    ETHERTYPE_IPV6,
    EtherHeader,
    Ip6Header,
    IpProto,
    PacketError,
    PcapRecord,
    TcpHeader,
    UdpHeader,
    read_pcap,
    read_uint16,
)
from .tls import PacketDirection, TlsError, TlsSession, load_key_log

logger = logging.getLogger(__name__)

TLS_RECORD_HEADER_SIZE = 5
TLS_MSG_TAG_CIPHER_CHANGE = 20
TLS_MSG_TAG_ALERT = 21
TLS_MSG_TAG_HANDSHAKE = 22
TLS_MSG_TAG_APPDATA = 23

PacketCallback = Callable[[int, bytes, timedelta, Any], None]


class CaptureError(Exception):
    """Raised when a capture cannot be opened or walked."""


class PcapHandle:
    """Replays captured packets of a single TCP session into ``callback``.

    The callback receives ``(pkg_count, payload, timestamp, context)``. An
    empty payload marks the end of a session (TCP FIN) or, with a
    ``pkg_count`` of zero, the end of the capture.
    """

    def __init__(
        self,
        pcap_in: str | Path | None = None,
        *,
        records: Iterable[PcapRecord] | None = None,
        callback: PacketCallback | None = None,
        context: Any = None,
        key_log: str | Path | None = None,
        verbose: int = 0,
        max_count: int = 0,
        tcp_port: int = 0,
    ) -> None:
        self.verbose = verbose
        self.callback: PacketCallback | None = callback
        self.context = context
        self.max_count = max_count
        self.tcp_port = tcp_port
        self.pkg_count = 0
        self.start_stamp = timedelta(0)
        self.seq_time = timedelta(0)
        self.clt_port = 0
        self.svc_port = 0
        self.seq_next = 0
        self.pcap_in = str(pcap_in) if pcap_in is not None else ""
        self.tls_session: TlsSession | None = None

        self._records: Iterator[PcapRecord] | None = None
        if pcap_in is not None:
            try:
                self._records = read_pcap(pcap_in)
            except PacketError as error:
                raise CaptureError(str(error)) from error
        elif records is not None:
            self._records = iter(records)

        if key_log is not None:
            try:
                client_keys, server_keys = load_key_log(key_log)
            except TlsError as error:
                raise CaptureError(str(error)) from error
            self.tls_session = TlsSession(client_keys, server_keys, verbose)

    def _notify(self, pkg_count: int, data: bytes, timestamp: timedelta) -> None:
        if self.callback is None:
            raise CaptureError("pcap-default-cb: no pcap callback defined")
        self.callback(pkg_count, data, timestamp, self.context)

    def run(self) -> int:
        """Process every packet, then signal the end of capture; return the packet count."""
        if self._records is None:
            raise CaptureError("pcap_handle-loop: no pcap input")
        if self.verbose > 0:
            logger.info("--- start ---")

        failure: PacketError | None = None
        try:
            for record in self._records:
                if self.max_count > 0 and self.pkg_count >= self.max_count:
                    break
                if not self.process_packet(record):
                    break
        except PacketError as error:
            failure = error

        try:
            self._notify(0, b"", self.start_stamp)
        except Exception as error:  # the callback's own failure is reported, not raised
            logger.error("pkg:%s %s", self.pkg_count, error)

        if failure is not None:
            raise CaptureError(
                f"pcap_handle-loop: pkg:{self.pkg_count} error:{failure}"
            ) from failure
        return self.pkg_count

    def process_packet(self, record: PcapRecord) -> bool:
        """Handle one captured packet; return False once the packet limit is passed."""
        self.pkg_count += 1
        if self.max_count > 0 and self.pkg_count > self.max_count:
            return False
        try:
            self._dispatch(record)
        except PacketError as error:
            logger.warning("pkg:%s malformed packet: %s", self.pkg_count, error)
        return True

    def _dispatch(self, record: PcapRecord) -> None:
        buffer = record.data
        ether = EtherHeader.from_bytes(buffer, 0)
        if ether.ether_type != ETHERTYPE_IPV6:
            if self.verbose > 0:
                logger.info(
                    "ether-packet-type: ignore packet:%s %#x", self.pkg_count, ether.ether_type
                )
            return

        ip6 = Ip6Header.from_bytes(buffer, ether.size)
        proto = ip6.proto
        if proto is IpProto.TCP:
            self._handle_tcp(record, ether, ip6)
        elif proto is IpProto.UDP:
            UdpHeader.from_bytes(buffer, ether.size + ip6.size)
            if self.verbose > 0:
                logger.info("ip-packet-type: ignoring packet:%s UDP", self.pkg_count)
        elif self.verbose > 0:
            logger.info(
                "ip-packet-type: ignoring packet:%s proto:%#x", self.pkg_count, ip6.next_header
            )

    def _direction(self, tcp: TcpHeader) -> PacketDirection | None:
        if self.svc_port == 0:
            return PacketDirection.UNSET
        if self.svc_port == tcp.destination_port and self.clt_port == tcp.source_port:
            return PacketDirection.CLIENT_TO_SERVER
        if self.svc_port == tcp.source_port and self.clt_port == tcp.destination_port:
            return PacketDirection.SERVER_TO_CLIENT
        return None

    def _trace(self, text: str, tcp: TcpHeader) -> None:
        logger.debug(
            "pkg:%s %s src:%s ack:%s seq:%s next:%s",
            self.pkg_count,
            text,
            tcp.source_port,
            tcp.ack,
            tcp.seq,
            tcp.ack_seq,
        )

    def _handle_tcp(self, record: PcapRecord, ether: EtherHeader, ip6: Ip6Header) -> None:
        buffer = record.data
        tcp_offset = ether.size + ip6.size
        tcp = TcpHeader.from_bytes(buffer, tcp_offset)
        data_len = ip6.payload_length - tcp.length
        if data_len < 0:
            raise PacketError(
                f"tcp header length {tcp.length} exceeds ip payload {ip6.payload_length}"
            )

        direction = self._direction(tcp)
        if direction is None:
            if self.verbose > 1:
                self._trace("Ignore out of session TCP packet", tcp)
            return

        if tcp.syn:
            if not tcp.ack:
                if self.tcp_port != 0 and tcp.destination_port != self.tcp_port:
                    if self.verbose > 1:
                        self._trace("Ignore TCP stream", tcp)
                    return
                self.start_stamp = record.timestamp
                self.seq_time = self.start_stamp
                self.clt_port = tcp.source_port
                self.svc_port = tcp.destination_port
            self.seq_next = tcp.ack_seq
            logger.info(
                "pkg:%s New TCP stream src:%s ack:%s seq:%s next:%s",
                self.pkg_count,
                tcp.source_port,
                tcp.ack,
                tcp.seq,
                tcp.ack_seq,
            )
            return

        if tcp.fin:
            if self.verbose > 0:
                logger.info(
                    "pkg:%s ip-packet-type: closing tcp session src:%s",
                    self.pkg_count,
                    tcp.source_port,
                )
            try:
                self._notify(self.pkg_count, b"", self.start_stamp)
            except Exception as error:  # session close result is deliberately ignored
                logger.debug("pkg:%s session close: %s", self.pkg_count, error)
            return

        self.seq_next = tcp.ack_seq

        if data_len == 0:
            if self.verbose > 1:
                self._trace("tcp-packet-type: ignoring empty packet", tcp)
            return

        if self.verbose > 8:
            self._trace(f"tcp-packet-data: len:{data_len}", tcp)

        start = tcp_offset + tcp.length
        payload = buffer[start : start + data_len]
        if len(payload) < data_len:
            raise PacketError(
                f"tcp payload truncated: expected {data_len} bytes, captured {len(payload)}"
            )

        try:
            if self.tls_session is None:
                self._notify(self.pkg_count, payload, record.timestamp)
            else:
                self._handle_tls(self.tls_session, tcp, direction, payload, record.timestamp)
        except Exception as error:  # per-packet failures are reported and the walk goes on
            logger.error("pkg:%s error:%s", self.pkg_count, error)

    def _handle_tls(
        self,
        session: TlsSession,
        tcp: TcpHeader,
        direction: PacketDirection,
        payload: bytes,
        timestamp: timedelta,
    ) -> None:
        tls_start = 0
        while True:
            header_end = tls_start + TLS_RECORD_HEADER_SIZE
            if header_end > len(payload):
                raise TlsError(
                    f"tls-packet-tls: truncated record header src:{tcp.source_port} "
                    f"packet:{self.pkg_count}"
                )
            tls_header = payload[tls_start:header_end]
            msg_tag, msg_major, msg_minor = tls_header[0], tls_header[1], tls_header[2]
            msg_len = read_uint16(tls_header[3:5])

            if msg_major < 3:
                logger.error(
                    "tls-packet-tls: SSL version < 3.x header len src:%s packet:%s",
                    tcp.source_port,
                    self.pkg_count,
                )
                return

            record_end = header_end + msg_len
            if record_end > len(payload):
                raise TlsError(
                    f"tls-packet-tls: truncated record src:{tcp.source_port} "
                    f"packet:{self.pkg_count}"
                )
            tls_data = payload[header_end:record_end]

            if msg_tag == TLS_MSG_TAG_HANDSHAKE:
                session.process_handshake(self.pkg_count, tls_data)
            elif msg_tag == TLS_MSG_TAG_ALERT:
                session.process_alert(self.pkg_count, tls_data)
            elif msg_tag == TLS_MSG_TAG_CIPHER_CHANGE:
                session.cipher_changed += 1
                if direction is PacketDirection.CLIENT_TO_SERVER:
                    session.client.sequence = 0
                elif direction is PacketDirection.SERVER_TO_CLIENT:
                    session.server.sequence = 0
                return  # remaining records in this segment are not needed
            elif msg_tag == TLS_MSG_TAG_APPDATA:
                if msg_minor < 3:
                    logger.error(
                        "tls-packet-tls: SSL version < 3.3 header len src:%s packet:%s",
                        tcp.source_port,
                        self.pkg_count,
                    )
                    return
                if session.cipher_changed < 2:
                    return
                plaintext = session.application_data(
                    self.pkg_count, direction, tls_header, tls_data
                )
                self._notify(self.pkg_count, plaintext, timestamp)
            else:
                raise TlsError(
                    f"tls-packet-tls: unsupported TLS message tag src:{tcp.source_port} "
                    f"packet:{self.pkg_count}"
                )

            tls_start = record_end
            if tls_start == len(payload):
                return