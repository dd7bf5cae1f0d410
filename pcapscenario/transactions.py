"""Pair decoded request and response messages into scenario transactions."""

from __future__ import annotations

import enum
import json
from collections.abc import Mapping, MutableSequence
from typing import Any


class ScenarioError(Exception):
    """Raised when a message sequence cannot be turned into a scenario."""


class CompactMode(enum.Enum):
    """How repeated transactions are folded when a session is closed."""

    NONE = "none"
    BASIC = "basic"
    STRONG = "strong"

    @classmethod
    def from_label(cls, label: str) -> CompactMode:
        """Parse a mode name, ignoring case."""
        try:
            return cls(label.lower())
        except ValueError:
            raise ScenarioError(f"invalid compact-mode: {label}") from None

    @property
    def label(self) -> str:
        return self.value


class ProtocolLogger:
    """Tracks one pending request of a protocol and completes it with its response.

    ``protocol`` is the verb prefix (for instance ``din`` or ``iso2``). With
    ``debug_only`` set, completed transactions are appended to the list passed
    to :meth:`log_message`; otherwise they are printed as JSON.
    """

    def __init__(self, protocol: str, debug_only: bool = True) -> None:
        self.protocol = protocol
        self.debug_only = debug_only
        self.pending: str | None = None
        self.transaction: dict[str, Any] = {}

    def log_message(
        self,
        transactions: MutableSequence[dict[str, Any]],
        compact_mode: CompactMode,
        pkg_count: int,
        delay: int,
        msg_label: str,
        body: Mapping[str, Any],
        response_label: str | None = None,
    ) -> dict[str, Any] | None:
        """Record one decoded message.

        A message arriving while nothing is pending opens a transaction; its
        ``response_label`` names the response it waits for, or ``None`` when no
        response is expected. A message arriving while a response is pending
        must be that response. Returns the transaction once it is complete.
        """
        if self.pending is None:
            self.transaction = {
                "uid": f"pkg:{pkg_count}",
                "verb": f"{self.protocol}:{msg_label}",
                "delay": int(delay),
                "query": dict(body),
            }
            self.pending = response_label
        elif msg_label == self.pending:
            self.transaction["ruid"] = f"pkg:{pkg_count}"
            if compact_mode is CompactMode.STRONG:
                try:
                    rcode = body["rcode"]
                except KeyError:
                    raise ScenarioError(
                        f"pcap-track-{self.protocol}: pkg:{pkg_count} response "
                        f"{msg_label} has no rcode"
                    ) from None
                self.transaction["response"] = dict(body)
                self.transaction["expect"] = {"rcode": rcode}
            else:
                self.transaction["expect"] = dict(body)
            self.pending = None
        else:
            raise ScenarioError(
                f"pcap-track-{self.protocol}: pkg:{pkg_count} invalid response id, "
                f"expected:{self.pending} got: {msg_label}"
            )

        if self.pending is not None:
            return None
        if self.debug_only:
            transactions.append(self.transaction)
        else:
            print(json.dumps(self.transaction, indent=2))
        return self.transaction