"""A bank server: its transaction queue, background worker and query endpoints."""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections import deque
from datetime import timedelta
from typing import Optional

from .config import BallotFile, ServerSettings
from .consensus import PaxosReplica
from .datastore import DataStore
from .messages import BalanceSnapshot, Commit, PerformanceReport, TxnRequest
from .replica import DuplicateTransactions, PaxosError, PeerPool

log = logging.getLogger(__name__)

DEFAULT_WORKER_INTERVAL = 0.1


class BankServer(PaxosReplica):
    """A replica that queues client transfers and serves balance and log queries."""

    def __init__(
        self,
        settings: ServerSettings,
        datastore: DataStore,
        ballot_file: Optional[BallotFile] = None,
        pool: Optional[PeerPool] = None,
    ) -> None:
        super().__init__(settings, datastore, ballot_file, pool)
        self.txn_queue: deque[TxnRequest] = deque()
        self.queue_lock = threading.Lock()
        self.txn_count = 0
        self.txn_start_time = time.monotonic()
        self._worker: Optional[threading.Thread] = None
        self._stop = threading.Event()

    # ------------------------------------------------------------ transfers

    def set_alive(self, alive: bool) -> None:
        """Mark the server as reachable or cut off for the current set."""
        log.info("Server %d: alive set to %s", self.server_number, alive)
        self.is_alive = alive

    def enqueue(self, txn: TxnRequest) -> None:
        """Queue a client transfer for the worker to process."""
        with self.queue_lock:
            self.txn_queue.append(txn)
            self.txn_count += 1

    def validate_txn(self, txn: TxnRequest) -> None:
        """Refuse a queued transfer already stored or logged, dropping it from the queue."""
        if self.find_in_db(txn) is not None:
            self._drop_front()
            raise PaxosError(
                f"Server {self.server_number}: duplicate txn found in db, moving on"
            )
        if self.find_in_logs(txn) is not None:
            self._drop_front()
            raise PaxosError(
                f"Server {self.server_number}: duplicate txn found in logs, moving on"
            )

    def _drop_front(self) -> None:
        if self.txn_queue:
            self.txn_queue.popleft()

    def poll_queue(self) -> Optional[TxnRequest]:
        """Process the transfer at the front of the queue; return it, or None."""
        if not self.is_alive:
            return None
        with self.queue_lock:
            if not self.txn_queue:
                return None
            txn = self.txn_queue[0]
            try:
                self.validate_txn(txn)
            except PaxosError as exc:
                log.info("%s", exc)
                return None
        try:
            self.process_txn(txn)
        except PaxosError as exc:
            log.info("%s", exc)
        return txn

    def process_txn(self, txn: TxnRequest) -> bool:
        """Execute a transfer locally if funds allow, else run a Paxos round.

        Returns True when the transfer was executed, False when a round was started.
        """
        self.txn_start_time = time.monotonic()
        if self.find_in_db(txn) is not None:
            raise PaxosError(
                f"Server {self.server_number}: duplicate txn found in db {txn!r}"
            )
        if self.find_in_logs(txn) is not None:
            raise PaxosError(
                f"Server {self.server_number}: duplicate txn found in logs {txn!r}"
            )
        if self.balance >= txn.amount:
            self.execute_txn(txn)
            self.latency_queue.append(
                timedelta(seconds=time.monotonic() - self.txn_start_time)
            )
            return True
        if not self.is_alive:
            raise PaxosError(f"Server {self.server_number}: server not alive")
        self.send_prepare()
        return False

    def execute_txn(self, txn: TxnRequest) -> None:
        """Log a transfer and debit it from this client's balance."""
        with self.lock:
            self.log_store.add(txn)
            self.balance -= txn.amount
        log.info("Server %d: executed %r, balance %s", self.server_number, txn, self.balance)

    # --------------------------------------------------------------- worker

    def start_worker(self, interval: float = DEFAULT_WORKER_INTERVAL) -> None:
        """Poll the queue every ``interval`` seconds in a background thread."""
        if self._worker is not None and self._worker.is_alive():
            raise RuntimeError("worker already running")
        self._stop.clear()

        def loop() -> None:
            while not self._stop.wait(interval):
                try:
                    self.poll_queue()
                except Exception:  # keep the worker running whatever one poll does
                    log.exception("Server %d: worker poll failed", self.server_number)

        self._worker = threading.Thread(
            target=loop, name=f"bank-worker-{self.server_number}", daemon=True
        )
        self._worker.start()

    def stop_worker(self) -> None:
        """Stop the background worker and wait for it to finish."""
        self._stop.set()
        if self._worker is not None:
            self._worker.join()
            self._worker = None

    # -------------------------------------------------------------- queries

    def print_balance(self) -> float:
        """Return this client's balance, catching up with every other server first."""
        pending = 0.0
        for address in self.settings.server_addresses:
            try:
                peer = self.pool.get(address)
                snapshot = copy.deepcopy(
                    peer.server_balance(self.last_committed_term, self.client_name)
                )
            except Exception as exc:  # an unreachable peer only leaves its share out
                log.warning("Server %d: balance from %s failed: %s",
                            self.server_number, address, exc)
                continue

            if snapshot.committed_txns:
                try:
                    self.receive_commit(
                        Commit(
                            ballot=snapshot.ballot,
                            accept_val=snapshot.committed_txns,
                            last_committed_term=snapshot.committed_txns[-1].term,
                        )
                    )
                except DuplicateTransactions:
                    pass

            for msg_id, txn in snapshot.log_txns.items():
                if txn.receiver != self.client_name:
                    continue
                if self.datastore.get_transaction(msg_id) is None:
                    pending += txn.amount
        return pending + self.balance

    def server_balance(self, last_committed_term: int, user: str) -> BalanceSnapshot:
        """Report the ballot, commits newer than the caller's and the local log."""
        log.info("Server %d: balance snapshot requested for %s", self.server_number, user)
        with self.lock:
            committed = (
                self.datastore.transactions_after_term(last_committed_term)
                if last_committed_term < self.last_committed_term
                else []
            )
            return BalanceSnapshot(
                ballot=self.ballot.copy(),
                committed_txns=committed,
                log_txns=self.log_store.as_dict(),
            )

    def print_logs(self) -> dict[str, TxnRequest]:
        return self.log_store.as_dict()

    def print_db(self) -> list[TxnRequest]:
        return self.datastore.all_transactions()

    def performance(self) -> PerformanceReport:
        """Total latency of completed transfers and rounds, and their throughput."""
        latencies = list(self.latency_queue)
        total = sum(latencies, timedelta(0))
        seconds = total.total_seconds()
        throughput = len(latencies) / seconds if seconds > 0 else 0.0
        return PerformanceReport(latency=total, throughput=throughput)