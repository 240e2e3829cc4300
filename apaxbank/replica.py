"""Replica state, committing agreed transactions and catching up slow peers."""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping, Optional

from .config import BallotFile, ServerSettings, address_of
from .datastore import BalanceNotFound, DataStore, DataStoreError, NoRowsUpdated
from .messages import Ballot, Commit, LogStore, SyncRequest, TxnRequest

log = logging.getLogger(__name__)

DEFAULT_BALANCE = 100.0


class PaxosError(Exception):
    """A protocol step was refused or could not be completed."""


class DuplicateTransactions(PaxosError):
    """The transactions of a commit are already in the datastore."""

    def __init__(self, message: str = "duplicate txns") -> None:
        super().__init__(message)


class UnknownPeer(PaxosError):
    """No peer is registered under the requested address."""


class PeerPool:
    """The replicas this one can reach, keyed by network address."""

    def __init__(self, peers: Optional[Mapping[str, Any]] = None) -> None:
        self._peers: dict[str, Any] = dict(peers or {})
        self._lock = threading.Lock()

    def register(self, address: str, peer: Any) -> None:
        with self._lock:
            self._peers[address] = peer

    def get(self, address: str) -> Any:
        with self._lock:
            try:
                return self._peers[address]
            except KeyError:
                raise UnknownPeer(f"no server at address {address!r}") from None

    def __contains__(self, address: object) -> bool:
        return address in self._peers

    def __len__(self) -> int:
        return len(self._peers)


@dataclass
class PromiseTally:
    """What a leader gathers from promises; it counts its own promise."""

    promise_count: int = 1
    server_addresses: list[str] = field(default_factory=list)
    max_accept_val: Ballot = field(default_factory=Ballot)
    transactions: list[TxnRequest] = field(default_factory=list)


@dataclass
class AcceptedValue:
    """The value a replica has accepted, with the ballot it came under."""

    ballot: Ballot
    transactions: list[TxnRequest] = field(default_factory=list)


@dataclass
class AcceptTally:
    """Accepted replies a leader has counted; it counts its own."""

    accepted_count: int = 1
    server_addresses: list[str] = field(default_factory=list)


class Replica:
    """One bank server's replicated state and its commit and sync steps."""

    def __init__(
        self,
        settings: ServerSettings,
        datastore: DataStore,
        ballot_file: Optional[BallotFile] = None,
        pool: Optional[PeerPool] = None,
    ) -> None:
        self.settings = settings
        self.datastore = datastore
        self.ballot_file = ballot_file
        self.pool = pool if pool is not None else PeerPool()
        self.lock = threading.RLock()
        self.ballot = self._initial_ballot()
        self.curr_val = PromiseTally()
        self.accept_val: Optional[AcceptedValue] = None
        self.accepted_servers = AcceptTally()
        self.majority_achieved = False
        self.log_store = LogStore()
        self.balance = self._initial_balance()
        self.is_alive = False
        self.last_committed_term = 0
        self.latency_queue: list[timedelta] = []
        self.paxos_start_time = time.monotonic()

    @property
    def server_number(self) -> int:
        return self.settings.server_number

    @property
    def client_name(self) -> str:
        return self.settings.client_name

    def _initial_ballot(self) -> Ballot:
        if self.ballot_file is not None and self.ballot_file.path.exists():
            return self.ballot_file.read()
        return Ballot()

    def _initial_balance(self) -> float:
        try:
            return self.datastore.get_balance(self.client_name)
        except BalanceNotFound as exc:
            log.warning("error trying to fetch balance from datastore: %s", exc)
            return DEFAULT_BALANCE

    def _call_peer(
        self, address: str, send: Callable[[Any, Any], Any], message: Any
    ) -> bool:
        """Deliver a copy of ``message`` to the peer at ``address``; log failures."""
        try:
            peer = self.pool.get(address)
            send(peer, copy.deepcopy(message))
        except Exception as exc:  # a peer's failure must not stop this replica
            log.warning("Server %d: call to %s failed: %s", self.server_number, address, exc)
            return False
        return True

    def _address_of(self, server_number: int) -> str:
        try:
            return address_of(server_number)
        except KeyError:
            return ""

    def update_ballot(self, term: int, server_number: int) -> None:
        """Adopt a new ballot and persist it."""
        with self.lock:
            new_ballot = Ballot(term, server_number)
            if self.ballot_file is not None:
                self.ballot_file.write(new_ballot)
            self.ballot.term_number = term
            self.ballot.server_number = server_number

    def reset_curr_val(self) -> None:
        self.curr_val = PromiseTally()

    def reset_accept_val(self) -> None:
        self.accept_val = None

    def reset_accepted_servers(self) -> None:
        self.accepted_servers = AcceptTally()

    def find_in_db(self, txn: TxnRequest) -> Optional[TxnRequest]:
        return self.datastore.get_transaction(txn.msg_id)

    def find_in_logs(self, txn: TxnRequest) -> Optional[TxnRequest]:
        return self.log_store.get(txn.msg_id)

    def add_local_txns(self) -> None:
        self.curr_val.transactions.extend(self.log_store.values())

    def commit_transactions(self, req: Commit) -> None:
        """Store the commit's transactions and credit this client atomically."""
        with self.lock:
            balance = self.balance
            with self.datastore.transaction():
                for txn in req.accept_val:
                    self.datastore.insert_transaction(txn, datetime.now())
                    if txn.receiver == self.client_name:
                        balance += txn.amount
                try:
                    self.datastore.update_balance(self.client_name, balance)
                except NoRowsUpdated:
                    pass
            self.balance = balance

    def delete_from_logs(self, txns: Iterable[TxnRequest]) -> None:
        self.log_store.remove(txns)

    def _already_committed(self, txns: list[TxnRequest]) -> bool:
        return bool(txns) and self.find_in_db(txns[0]) is not None

    def send_commit(self, req: Commit) -> None:
        """As leader, commit the agreed value locally and tell the acceptors."""
        with self.lock:
            if req.ballot.term_number < self.ballot.term_number:
                return
            for txn in req.accept_val:
                txn.term = req.ballot.term_number
            try:
                if self._already_committed(req.accept_val):
                    log.info("Server %d: txn exists in db already", self.server_number)
                    return
                self.commit_transactions(req)
            except DataStoreError as exc:
                log.warning("Server %d: commit failed: %s", self.server_number, exc)
                return
            self.last_committed_term = req.ballot.term_number
            req.last_committed_term = req.ballot.term_number

            self.delete_from_logs(req.accept_val)
            self.reset_curr_val()
            self.reset_accept_val()
            self.reset_accepted_servers()
            log.info("Server %d: new txns committed, log: %r", self.server_number, self.log_store)

        for address in req.server_addresses:
            self._call_peer(address, lambda peer, msg: peer.receive_commit(msg), req)
        self.latency_queue.append(
            timedelta(seconds=time.monotonic() - self.paxos_start_time)
        )

    def receive_commit(self, req: Commit) -> None:
        """As acceptor, store a committed value and drop it from the log."""
        with self.lock:
            if req.ballot.term_number > self.ballot.term_number:
                self.update_ballot(req.ballot.term_number, req.ballot.server_number)

            if req.last_committed_term <= self.last_committed_term:
                log.info("Server %d: outdated commit request: %r", self.server_number, req)
                return

            if self._already_committed(req.accept_val):
                log.info("Server %d: duplicate txns %r", self.server_number, req)
                raise DuplicateTransactions()

            self.commit_transactions(req)
            self.last_committed_term = self.datastore.latest_term()

            self.delete_from_logs(req.accept_val)
            self.reset_accept_val()
            log.info("Server %d: new txns committed, log: %r", self.server_number, self.log_store)

    def send_sync_response(self, req: SyncRequest) -> None:
        """Send a lagging server every transaction committed after its last term."""
        latest = self.datastore.transactions_after_term(req.last_committed_term)
        last_term = latest[-1].term if latest else 0
        commit = Commit(
            ballot=self.ballot.copy(),
            accept_val=latest,
            last_committed_term=last_term,
        )
        self._call_peer(
            self._address_of(req.server_number),
            lambda peer, msg: peer.receive_commit(msg),
            commit,
        )

    def sync(self, req: SyncRequest) -> None:
        """Answer a sync request from a slow server."""
        self.send_sync_response(req)