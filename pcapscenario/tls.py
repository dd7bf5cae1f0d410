"""TLS 1.3 session tracking and application-data decryption driven by a key log."""

from __future__ import annotations

import enum
import logging
import string
from bisect import bisect_left
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESCCM, AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .packets import read_uint16

logger = logging.getLogger(__name__)

HANDSHAKE_CLIENT_HELLO = 1
HANDSHAKE_SERVER_HELLO = 2
EXTENSION_SUPPORTED_VERSIONS = 0x002B
RANDOM_SIZE = 32

CLIENT_TRAFFIC_LABEL = "CLIENT_TRAFFIC_" + "SECRET_0"
SERVER_TRAFFIC_LABEL = "SERVER_TRAFFIC_" + "SECRET_0"

_HASHES = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


class TlsError(Exception):
    """Raised when a TLS record cannot be tracked or decrypted."""


class PacketDirection(enum.Enum):
    """Direction of a TCP segment within the tracked session."""

    CLIENT_TO_SERVER = "client-to-server"
    SERVER_TO_CLIENT = "server-to-client"
    UNSET = "unset"


class MasterKeyTag(enum.Enum):
    """Which application traffic key a stream uses."""

    CLIENT_APPLICATION = "client-application"
    SERVER_APPLICATION = "server-application"


class TlsVersion(enum.Enum):
    """Protocol version seen in the hello messages."""

    TLS1_2 = "tls-1.2"
    TLS1_3 = "tls-1.3"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class _SuiteParams:
    hash_name: str
    key_size: int
    iv_size: int
    tag_size: int


class TlsCipherSuite(enum.Enum):
    """TLS 1.3 cipher suites, valued by their wire identifier."""

    UNKNOWN = 0
    TLS_AES_128_GCM_SHA256 = 0x1301
    TLS_AES_256_GCM_SHA384 = 0x1302
    TLS_CHACHA20_POLY1305_SHA256 = 0x1303
    TLS_AES_128_CCM_SHA256 = 0x1304
    TLS_AES_128_CCM_8_SHA256 = 0x1305

    @classmethod
    def from_tagid(cls, tagid: int) -> TlsCipherSuite:
        """Map a wire cipher identifier to a suite, UNKNOWN when unsupported."""
        try:
            return cls(tagid)
        except ValueError:
            return cls.UNKNOWN

    @property
    def _params(self) -> _SuiteParams:
        try:
            return _SUITE_PARAMS[self]
        except KeyError:
            raise TlsError(f"cipher suite {self.name} has no parameters") from None

    @property
    def hash_name(self) -> str:
        return self._params.hash_name

    @property
    def key_size(self) -> int:
        return self._params.key_size

    @property
    def iv_size(self) -> int:
        return self._params.iv_size

    @property
    def tag_size(self) -> int:
        return self._params.tag_size

    def _new_aead(self, key: bytes) -> Any:
        if self in (TlsCipherSuite.TLS_AES_128_GCM_SHA256, TlsCipherSuite.TLS_AES_256_GCM_SHA384):
            return AESGCM(key)
        if self is TlsCipherSuite.TLS_CHACHA20_POLY1305_SHA256:
            return ChaCha20Poly1305(key)
        if self in (TlsCipherSuite.TLS_AES_128_CCM_SHA256, TlsCipherSuite.TLS_AES_128_CCM_8_SHA256):
            return AESCCM(key, tag_length=self.tag_size)
        raise TlsError(f"cipher suite {self.name} has no AEAD")


_SUITE_PARAMS = {
    TlsCipherSuite.TLS_AES_128_GCM_SHA256: _SuiteParams("sha256", 16, 12, 16),
    TlsCipherSuite.TLS_AES_256_GCM_SHA384: _SuiteParams("sha384", 32, 12, 16),
    TlsCipherSuite.TLS_CHACHA20_POLY1305_SHA256: _SuiteParams("sha256", 32, 12, 16),
    TlsCipherSuite.TLS_AES_128_CCM_SHA256: _SuiteParams("sha256", 16, 12, 16),
    TlsCipherSuite.TLS_AES_128_CCM_8_SHA256: _SuiteParams("sha256", 16, 12, 8),
}


def hexa_to_bytes(keytext: str | bytes) -> bytes:
    """Decode hexadecimal text two digits at a time; a trailing lone digit is one byte."""
    if isinstance(keytext, (bytes, bytearray)):
        try:
            keytext = keytext.decode("ascii")
        except UnicodeDecodeError as error:
            raise TlsError(f"invalid hexadecimal text: {error}") from error
    if any(char not in string.hexdigits for char in keytext):
        raise TlsError(f"invalid hexadecimal text: {keytext!r}")
    return bytes(int(keytext[pos : pos + 2], 16) for pos in range(0, len(keytext), 2))


def encode_nonce(number: int, size: int) -> bytes:
    """Return ``size`` bytes holding ``number`` as a big-endian 64-bit value at the end."""
    if size < 8:
        raise TlsError(f"nonce size {size} is shorter than 8 bytes")
    if not 0 <= number < 1 << 64:
        raise TlsError(f"nonce sequence {number} does not fit 64 bits")
    return number.to_bytes(size, "big")


def hkdf_expand_label(hash_name: str, secret: bytes, label: str, length: int) -> bytes:
    """TLS 1.3 HKDF-Expand-Label with an empty context."""
    try:
        algorithm = _HASHES[hash_name.lower()]()
    except KeyError:
        raise TlsError(f"hkdf-expand-secret: unsupported hash:{hash_name}") from None
    full_label = b"tls13 " + label.encode()
    if len(full_label) > 255:
        raise TlsError(f"hkdf-expand-secret: label too long:{label}")
    if not 0 < length < 1 << 16:
        raise TlsError(f"hkdf-expand-secret: invalid length:{length}")
    info = length.to_bytes(2, "big") + bytes([len(full_label)]) + full_label + bytes(1)
    try:
        return HKDFExpand(algorithm=algorithm, length=length, info=info).derive(bytes(secret))
    except ValueError as error:
        raise TlsError(f"hkdf-expand-secret: iv_label:{label} error:{error}") from error


@dataclass(frozen=True, order=True)
class PskMasterKey:
    """A traffic key indexed by the client random it belongs to."""

    random: bytes
    secret: bytes


def load_key_log(path: str | Path) -> tuple[list[PskMasterKey], list[PskMasterKey]]:
    """Read client and server application traffic keys from a key log file.

    Both lists come back sorted by client random.
    """
    try:
        lines = Path(path).read_text(errors="replace").splitlines()
    except OSError as error:
        raise TlsError(f"tls-session-new: fail to open pre-master-key file {error}") from error

    client_keys: list[PskMasterKey] = []
    server_keys: list[PskMasterKey] = []
    targets = {
        CLIENT_TRAFFIC_LABEL: client_keys,
        SERVER_TRAFFIC_LABEL: server_keys,
    }
    for line in lines:
        if not line.strip():
            continue
        parts = line.split(" ")
        if len(parts) < 3:
            raise TlsError(f"tls-session-new: malformed key log line:{line!r}")
        label, random_hex, key_hex = parts[:3]
        target = targets.get(label)
        if target is not None:
            target.append(PskMasterKey(hexa_to_bytes(random_hex), hexa_to_bytes(key_hex)))
    return sorted(client_keys), sorted(server_keys)


@dataclass
class TlsStream:
    """State of one direction of a TLS session."""

    tag: MasterKeyTag
    keys: list[PskMasterKey] = field(default_factory=list)
    random: bytes = field(default_factory=bytes)
    nonce_secret: bytes = field(default_factory=bytes)
    aead: Any = None
    sequence: int = 0

    def __post_init__(self) -> None:
        self.keys = sorted(self.keys)


def _take(data: bytes, start: int, size: int, pkg_count: int) -> bytes:
    if start + size > len(data):
        raise TlsError(
            f"tls-packet-tls: pkg:{pkg_count} truncated record, need {size} bytes at {start}"
        )
    return data[start : start + size]


class TlsSession:
    """Follows a TLS 1.3 handshake and decrypts application records."""

    def __init__(
        self,
        client_keys: Iterable[PskMasterKey] = (),
        server_keys: Iterable[PskMasterKey] = (),
        verbose: int = 0,
    ) -> None:
        self.version = TlsVersion.UNKNOWN
        self.cipher_changed = 0
        self.cipher = TlsCipherSuite.UNKNOWN
        self.client = TlsStream(MasterKeyTag.CLIENT_APPLICATION, list(client_keys))
        self.server = TlsStream(MasterKeyTag.SERVER_APPLICATION, list(server_keys))
        self.verbose = verbose
        self.last_alert: tuple[int, int] | None = None

    def _stream(self, tag: MasterKeyTag) -> TlsStream:
        return self.client if tag is MasterKeyTag.CLIENT_APPLICATION else self.server

    def master_key(self, tag: MasterKeyTag) -> bytes | None:
        """Return the traffic key for ``tag`` matching the client random, if any."""
        keys = self._stream(tag).keys
        randoms = [key.random for key in keys]
        index = bisect_left(randoms, self.client.random)
        if index < len(keys) and keys[index].random == self.client.random:
            return keys[index].secret
        return None

    def _aead_cipher_init(self, pkg_count: int, tag: MasterKeyTag) -> tuple[bytes, Any]:
        master = self.master_key(tag)
        if master is None:
            raise TlsError(
                f"tls-packet-hello: packet:{pkg_count} fail to find psk:{self.client.random.hex()}"
            )
        logger.debug("aead_cipher_init:%s master=%s", tag.name, master.hex())
        hash_name = self.cipher.hash_name
        nonce_key = hkdf_expand_label(hash_name, master, "iv", self.cipher.iv_size)
        key = hkdf_expand_label(hash_name, master, "key", self.cipher.key_size)
        try:
            aead = self.cipher._new_aead(key)
        except ValueError as error:
            raise TlsError(f"tls-packet-hello: packet:{pkg_count} error:{error}") from error
        return nonce_key, aead

    def process_handshake(self, pkg_count: int, tls_data: bytes) -> None:
        """Track a client or server hello; other handshake messages are errors."""
        data = bytes(tls_data)
        header = _take(data, 0, 6, pkg_count)
        msg_type = header[0]
        if header[4] == 3 and header[5] == 3:
            self.version = TlsVersion.TLS1_2
        index = 6

        if msg_type == HANDSHAKE_CLIENT_HELLO:
            self.client.random = _take(data, index, RANDOM_SIZE, pkg_count)
        elif msg_type == HANDSHAKE_SERVER_HELLO:
            self._process_server_hello(pkg_count, data, index)
        else:
            raise TlsError(f"tls-packet-tls: pkg:{pkg_count} unsupported TLS hello-tag")

    def _process_server_hello(self, pkg_count: int, data: bytes, index: int) -> None:
        self.server.random = _take(data, index, RANDOM_SIZE, pkg_count)
        index += RANDOM_SIZE

        session_len = _take(data, index, 1, pkg_count)[0]
        index += 1 + session_len

        cipher_tag = read_uint16(_take(data, index, 2, pkg_count))
        index += 2
        index += 1  # compression method

        extensions_len = read_uint16(_take(data, index, 2, pkg_count))
        index += 2
        end = index + extensions_len
        while index < end:
            ext_tag = read_uint16(_take(data, index, 2, pkg_count))
            ext_len = read_uint16(_take(data, index + 2, 2, pkg_count))
            index += 4
            if ext_tag == EXTENSION_SUPPORTED_VERSIONS:
                major, minor = _take(data, index, 2, pkg_count)
                if major == 3 and minor == 4:
                    self.version = TlsVersion.TLS1_3
            index += ext_len

        self.cipher = TlsCipherSuite.from_tagid(cipher_tag)
        if self.cipher is TlsCipherSuite.UNKNOWN:
            raise TlsError(
                f"tls-packet-hello: pkg:{pkg_count} unsupported TLS cipher-tagid:{cipher_tag:x}"
            )

        for stream, label in ((self.client, "client_application"), (self.server, "server")):
            try:
                stream.nonce_secret, stream.aead = self._aead_cipher_init(pkg_count, stream.tag)
            except TlsError as error:
                raise TlsError(
                    f"tls-packet-hello: pkg:{pkg_count} {label} fail aead cipher init: {error}"
                ) from error

    def process_alert(self, pkg_count: int, tls_data: bytes) -> None:
        """Record a plain alert's level and description; encrypted alerts are accepted as is."""
        data = bytes(tls_data)
        if len(data) == 2:
            self.last_alert = (data[0], data[1])
            if self.verbose > 0:
                logger.info(
                    "tls-alert pkg:%s level:%s description:%s", pkg_count, data[0], data[1]
                )
        elif self.verbose > 1:
            logger.debug("tls-alert pkg:%s opaque len:%s", pkg_count, len(data))

    def application_data(
        self,
        pkg_count: int,
        direction: PacketDirection,
        tls_auth: bytes,
        tls_data: bytes,
    ) -> bytes:
        """Decrypt one application-data record and return its plaintext."""
        if direction is PacketDirection.CLIENT_TO_SERVER:
            stream = self.client
        elif direction is PacketDirection.SERVER_TO_CLIENT:
            stream = self.server
        else:
            raise TlsError(f"application_data: pkg:{pkg_count} invalid direction:{direction.name}")
        if stream.aead is None:
            raise TlsError(f"application_data: pkg:{pkg_count} no cipher negotiated")

        seq_nonce = encode_nonce(stream.sequence, self.cipher.iv_size)
        stream.sequence += 1
        nonce = bytes(a ^ b for a, b in zip(seq_nonce, stream.nonce_secret))

        try:
            plaintext = stream.aead.decrypt(nonce, bytes(tls_data), bytes(tls_auth))
        except (InvalidTag, ValueError) as error:
            raise TlsError(
                f"application_data: pkg:{pkg_count} dir:{direction.name} "
                f"error:decryption failed {error}"
            ) from error

        if self.verbose > 8:
            logger.info(
                "application_data pkg:%s text:%r len:%s", pkg_count, plaintext, len(plaintext)
            )
        return plaintext