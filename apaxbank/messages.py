"""Messages exchanged between bank replicas, and the local transaction log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, Iterator, Optional


@dataclass
class Ballot:
    """A Paxos ballot: a term number and the server that issued it."""

    term_number: int = 0
    server_number: int = 0

    def copy(self) -> Ballot:
        return Ballot(self.term_number, self.server_number)


@dataclass
class TxnRequest:
    """A transfer of ``amount`` from ``sender`` to ``receiver``."""

    sender: str
    receiver: str
    amount: float
    msg_id: str = ""
    term: int = 0


@dataclass
class TxnSet:
    """A numbered batch of transactions with the servers alive while it runs."""

    set_no: int
    txns: list[TxnRequest] = field(default_factory=list)
    live_servers: list[str] = field(default_factory=list)


@dataclass
class Prepare:
    ballot: Ballot
    last_committed_term: int = 0


@dataclass
class Promise:
    ballot: Ballot
    server_number: int
    promise_ack: bool = True
    accept_num: Optional[Ballot] = None
    accept_val: Optional[list[TxnRequest]] = None
    local_val: list[TxnRequest] = field(default_factory=list)


@dataclass
class Accept:
    ballot: Ballot
    accept_val: list[TxnRequest] = field(default_factory=list)
    server_addresses: list[str] = field(default_factory=list)


@dataclass
class Accepted:
    ballot: Ballot
    accept_val: list[TxnRequest] = field(default_factory=list)
    server_number: int = 0


@dataclass
class Commit:
    ballot: Ballot
    accept_val: list[TxnRequest] = field(default_factory=list)
    server_addresses: list[str] = field(default_factory=list)
    last_committed_term: int = 0


@dataclass
class SyncRequest:
    last_committed_term: int
    server_number: int


@dataclass
class BalanceSnapshot:
    """What one server reports when asked for the state behind a balance."""

    ballot: Ballot
    committed_txns: list[TxnRequest] = field(default_factory=list)
    log_txns: dict[str, TxnRequest] = field(default_factory=dict)


@dataclass
class PerformanceReport:
    latency: timedelta = timedelta(0)
    throughput: float = 0.0


class LogStore:
    """Transactions executed locally but not yet committed, keyed by message id."""

    def __init__(self) -> None:
        self._logs: dict[str, TxnRequest] = {}

    def add(self, txn: TxnRequest) -> None:
        self._logs[txn.msg_id] = txn

    def get(self, msg_id: str) -> Optional[TxnRequest]:
        return self._logs.get(msg_id)

    def remove(self, txns: Iterable[TxnRequest]) -> None:
        for txn in txns:
            self._logs.pop(txn.msg_id, None)

    def values(self) -> list[TxnRequest]:
        return list(self._logs.values())

    def as_dict(self) -> dict[str, TxnRequest]:
        return dict(self._logs)

    def __contains__(self, msg_id: object) -> bool:
        return msg_id in self._logs

    def __len__(self) -> int:
        return len(self._logs)

    def __iter__(self) -> Iterator[TxnRequest]:
        return iter(self.values())

    def __repr__(self) -> str:
        return f"LogStore({self._logs!r})"