import struct
from datetime import timedelta

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from pcapscenario.capture import CaptureError, PcapHandle
from pcapscenario.packets import PcapRecord
from pcapscenario.tls import hkdf_expand_label

CLIENT_PORT = 50000
SERVER_PORT = 15118
SYN = 0x02
ACK = 0x10
FIN = 0x01


def tcp_frame(src, dst, flags, payload=b"", seq=1, ack_seq=2):
    eth = bytes(12) + struct.pack("!H", 0x86DD)
    ip6 = struct.pack("!IHBB", 0x60000000, 20 + len(payload), 6, 64) + bytes(32)
    tcp = struct.pack("!HHIIBBHHH", src, dst, seq, ack_seq, 5 << 4, flags, 1024, 0, 0)
    return eth + ip6 + tcp + payload


def record(frame, seconds=0):
    return PcapRecord(timestamp=timedelta(seconds=seconds), length=len(frame), data=frame)


def client(flags, payload=b"", seconds=0):
    return record(tcp_frame(CLIENT_PORT, SERVER_PORT, flags, payload), seconds)


def server(flags, payload=b"", seconds=0):
    return record(tcp_frame(SERVER_PORT, CLIENT_PORT, flags, payload), seconds)


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, pkg_count, data, timestamp, context):
        self.calls.append((pkg_count, bytes(data), timestamp, context))


def write_pcap(path, frames):
    content = struct.pack("<IHHiIII", 0xA1B2C3D4, 2, 4, 0, 0, 65535, 1)
    for index, frame in enumerate(frames):
        content += struct.pack("<IIII", index, 0, len(frame), len(frame)) + frame
    path.write_bytes(content)


def test_syn_opens_session_and_data_is_delivered():
    rec = Recorder()
    handle = PcapHandle(callback=rec, context="ctx")
    assert handle.process_packet(client(SYN, seconds=5)) is True
    assert handle.clt_port == CLIENT_PORT
    assert handle.svc_port == SERVER_PORT
    assert handle.start_stamp == timedelta(seconds=5)
    handle.process_packet(client(ACK, b"hello", seconds=6))
    assert rec.calls == [(2, b"hello", timedelta(seconds=6), "ctx")]


def test_out_of_session_packet_is_ignored():
    rec = Recorder()
    handle = PcapHandle(callback=rec)
    handle.process_packet(client(SYN))
    handle.process_packet(record(tcp_frame(1234, 4321, ACK, b"noise")))
    assert rec.calls == []
    assert handle.pkg_count == 2


def test_tcp_port_filter_skips_other_streams():
    rec = Recorder()
    handle = PcapHandle(callback=rec, tcp_port=SERVER_PORT + 1)
    handle.process_packet(client(SYN))
    assert handle.svc_port == 0
    assert handle.clt_port == 0


def test_fin_signals_session_end():
    rec = Recorder()
    handle = PcapHandle(callback=rec)
    handle.process_packet(client(SYN, seconds=3))
    handle.process_packet(client(FIN | ACK, seconds=9))
    assert rec.calls == [(2, b"", timedelta(seconds=3), None)]


def test_non_ipv6_frame_is_ignored():
    rec = Recorder()
    handle = PcapHandle(callback=rec)
    frame = bytes(12) + struct.pack("!H", 0x0800) + bytes(40)
    assert handle.process_packet(record(frame)) is True
    assert rec.calls == []
    assert handle.pkg_count == 1


def test_empty_segment_not_delivered():
    rec = Recorder()
    handle = PcapHandle(callback=rec)
    handle.process_packet(client(SYN))
    handle.process_packet(server(ACK))
    assert rec.calls == []


def test_callback_error_does_not_stop_processing():
    def failing(pkg_count, data, timestamp, context):
        raise ValueError("boom")

    handle = PcapHandle(callback=failing)
    handle.process_packet(client(SYN))
    assert handle.process_packet(client(ACK, b"x")) is True
    assert handle.pkg_count == 2


def test_max_count_stops_processing():
    handle = PcapHandle(callback=Recorder(), max_count=1)
    assert handle.process_packet(client(SYN)) is True
    assert handle.process_packet(client(ACK, b"x")) is False


def test_run_over_file_reports_end_of_capture(tmp_path):
    path = tmp_path / "capture.pcap"
    write_pcap(
        path,
        [
            tcp_frame(CLIENT_PORT, SERVER_PORT, SYN),
            tcp_frame(CLIENT_PORT, SERVER_PORT, ACK, b"abc"),
        ],
    )
    rec = Recorder()
    handle = PcapHandle(path, callback=rec)
    assert handle.pcap_in == str(path)
    assert handle.run() == 2
    assert [call[:2] for call in rec.calls] == [(2, b"abc"), (0, b"")]
    assert rec.calls[1][2] == timedelta(seconds=0)


def test_run_honours_max_count(tmp_path):
    path = tmp_path / "capture.pcap"
    write_pcap(
        path,
        [
            tcp_frame(CLIENT_PORT, SERVER_PORT, SYN),
            tcp_frame(CLIENT_PORT, SERVER_PORT, ACK, b"one"),
            tcp_frame(CLIENT_PORT, SERVER_PORT, ACK, b"two"),
        ],
    )
    rec = Recorder()
    handle = PcapHandle(path, callback=rec, max_count=2)
    assert handle.run() == 2
    assert [call[1] for call in rec.calls] == [b"one", b""]


def test_missing_file_raises(tmp_path):
    with pytest.raises(CaptureError):
        PcapHandle(tmp_path / "missing.pcap")


def test_run_without_input_raises():
    with pytest.raises(CaptureError):
        PcapHandle().run()


def test_truncated_file_raises_after_final_callback(tmp_path):
    path = tmp_path / "broken.pcap"
    write_pcap(path, [tcp_frame(CLIENT_PORT, SERVER_PORT, SYN)])
    path.write_bytes(path.read_bytes() + b"\x00\x00\x00")
    rec = Recorder()
    handle = PcapHandle(path, callback=rec)
    with pytest.raises(CaptureError):
        handle.run()
    assert rec.calls[-1][:2] == (0, b"")


def test_missing_key_log_raises(tmp_path):
    with pytest.raises(CaptureError):
        PcapHandle(key_log=tmp_path / "nokeys.log")


def tls_record(tag, body, minor=3):
    return bytes([tag, 3, minor]) + struct.pack("!H", len(body)) + body


def test_tls_application_data_is_decrypted(tmp_path):
    client_random = bytes([7]) * 32
    client_secret = bytes(range(32))
    server_secret = bytes(range(32, 64))
    key_log = tmp_path / "keys.log"
    key_log.write_text(
        f"CLIENT_TRAFFIC_SECRET_0 {client_random.hex()} {client_secret.hex()}\n"
        f"SERVER_TRAFFIC_SECRET_0 {client_random.hex()} {server_secret.hex()}\n"
    )
    rec = Recorder()
    handle = PcapHandle(callback=rec, key_log=key_log)

    client_hello = bytes([1, 0, 0, 38, 3, 3]) + client_random
    server_body = (
        bytes([3, 3])
        + bytes([9]) * 32
        + bytes([0])
        + bytes([0x13, 0x01])
        + bytes([0])
        + struct.pack("!H", 6)
        + bytes([0x00, 0x2B, 0x00, 0x02, 3, 4])
    )
    server_hello = bytes([2]) + len(server_body).to_bytes(3, "big") + server_body

    handle.process_packet(client(SYN))
    handle.process_packet(client(ACK, tls_record(22, client_hello, minor=1)))
    handle.process_packet(server(ACK, tls_record(22, server_hello)))
    handle.process_packet(server(ACK, tls_record(20, b"\x01")))
    handle.process_packet(client(ACK, tls_record(20, b"\x01")))
    assert handle.tls_session.cipher_changed == 2

    def seal(secret, plaintext):
        key = hkdf_expand_label("sha256", secret, "key", 16)
        iv = hkdf_expand_label("sha256", secret, "iv", 12)
        length = len(plaintext) + 16
        aad = bytes([23, 3, 3]) + struct.pack("!H", length)
        return tls_record(23, AESGCM(key).encrypt(iv, plaintext, aad))

    handle.process_packet(client(ACK, seal(client_secret, b"request")))
    handle.process_packet(server(ACK, seal(server_secret, b"response")))
    assert [call[1] for call in rec.calls] == [b"request", b"response"]
    assert handle.tls_session.client.sequence == 1
    assert handle.tls_session.server.sequence == 1


def test_tls_application_data_before_cipher_change_is_dropped(tmp_path):
    key_log = tmp_path / "keys.log"
    key_log.write_text("")
    rec = Recorder()
    handle = PcapHandle(callback=rec, key_log=key_log)
    handle.process_packet(client(SYN))
    handle.process_packet(client(ACK, tls_record(23, bytes(20))))
    assert rec.calls == []
    assert handle.tls_session.cipher_changed == 0