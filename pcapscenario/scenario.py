"""Collect transactions of capture sessions into an injector scenario document."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .transactions import CompactMode, ProtocolLogger, ScenarioError

DEFAULT_CALL_TIMEOUT = 3000  # per-call timeout in ms
DEFAULT_CALL_DELAY = 100  # delay used when a transaction carries none, in ms
DEFAULT_DELAY_PERCENT = 10
DEFAULT_DELAY_MIN = 50
DEFAULT_DELAY_MAX = 100

SUPPORTED_PROTOCOLS = ("din", "iso2")


def short_scenario_name(pcap_in: str) -> str:
    """Return the capture file's base name up to its first dot."""
    base_name = str(pcap_in).split("/")[-1]
    return base_name.split(".")[0]


def _query_key(transaction: Mapping[str, Any]) -> str:
    if "query" not in transaction:
        return ""
    return json.dumps(transaction["query"], sort_keys=True)


def _verb(transaction: Mapping[str, Any]) -> str:
    try:
        return str(transaction["verb"])
    except KeyError:
        raise ScenarioError(
            f"pcap-session-close: transaction {transaction.get('uid', '?')} has no verb"
        ) from None


@dataclass
class _Run:
    transaction: dict[str, Any]
    verb: str
    query: str
    delay: int
    count: int = 1

    def to_json(self) -> dict[str, Any]:
        result = dict(self.transaction)
        result["retry"] = {
            "timeout": DEFAULT_CALL_TIMEOUT,
            "delay": self.delay,
            "count": self.count,
        }
        return result


def compact_transactions(
    transactions: Iterable[Mapping[str, Any]], mode: CompactMode
) -> list[dict[str, Any]]:
    """Fold consecutive repeated transactions into one with a retry count.

    BASIC folds transactions with the same verb and query; STRONG folds on
    the verb alone; NONE keeps every transaction as it is.
    """
    items = [dict(transaction) for transaction in transactions]
    if mode is CompactMode.NONE:
        return items

    result: list[dict[str, Any]] = []
    previous: _Run | None = None
    for current in items:
        verb = _verb(current)
        query = _query_key(current)
        if previous is not None and verb == previous.verb and (
            mode is CompactMode.STRONG or query == previous.query
        ):
            previous.count += 1
            continue
        if previous is not None:
            result.append(previous.to_json())
        previous = _Run(
            transaction=current,
            verb=verb,
            query=query,
            delay=current.get("delay", DEFAULT_CALL_DELAY),
        )
    if previous is not None:
        result.append(previous.to_json())
    return result


class ScenarioLog:
    """Transactions of the current session and the scenarios already closed."""

    def __init__(
        self, pkg_start: int = 0, protocol: str | None = None, debug_only: bool = True
    ) -> None:
        self.pkg_start = pkg_start
        self.protocol = protocol if protocol in SUPPORTED_PROTOCOLS else "undef"
        self.logger: ProtocolLogger | None = (
            ProtocolLogger(self.protocol, debug_only) if self.protocol != "undef" else None
        )
        self.scenarios: list[dict[str, Any]] = []
        self.transactions: list[dict[str, Any]] = [
            {
                "uid": "sdp-evse",
                "verb": f"{self.protocol}:sdp_evse_req",
                "injector_only": True,
                "query": {"action": "discover"},
            },
            {
                "uid": "app-set-protocol",
                "verb": f"{self.protocol}:app_proto_req",
                "injector_only": True,
            },
        ]

    def session_close(self, pcap_in: str, compact_mode: CompactMode) -> int:
        """Turn the pending transactions into a scenario; return how many there were."""
        count = len(self.transactions)
        if count == 0:
            raise ScenarioError("pcap-session-close: empty iso15118 session")

        self.transactions.append(
            {
                "uid": "sdp-evse",
                "verb": "iso2:sdp_evse_req",
                "injector_only": True,
                "query": {"action": "forget"},
            }
        )
        scenario = {
            "uid": f"{short_scenario_name(pcap_in)}:{len(self.scenarios) + 1}",
            # an average of one second per transaction
            "timeout": len(self.transactions),
            "transactions": compact_transactions(self.transactions, compact_mode),
        }
        self.scenarios.append(scenario)
        self.transactions = []
        return count

    def import_close(self, pcap_in: str, compact_mode: CompactMode) -> dict[str, Any]:
        """Wrap every closed scenario into the binder document and reset them."""
        if not self.scenarios:
            raise ScenarioError("pcap-scenarios-close: Fail to parse any iso15118 scenario")

        binding = {
            "uid": "iso15118-simulator",
            "info": str(pcap_in),
            "api": "iso15118-${SIMULATION_MODE}",
            "path": "${INJECTOR_BINDING_DIR}/libafb_injector.so",
            "simulation": "${SIMULATION_MODE}",
            "target": "iso15118-simulator",
            "autorun": 0,
            "delay": {
                "percent": DEFAULT_DELAY_PERCENT,
                "min": DEFAULT_DELAY_MIN,
                "max": DEFAULT_DELAY_MAX,
            },
            "compact": compact_mode.label,
            "scenarios": self.scenarios,
        }
        self.scenarios = []
        return {"binding": [binding]}