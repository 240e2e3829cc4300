"""Routes client commands to the bank server that owns each user."""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import timedelta
from typing import Any, Iterable

from .messages import PerformanceReport, TxnRequest, TxnSet
from .replica import PeerPool, UnknownPeer

log = logging.getLogger(__name__)

USER_SERVERS: dict[str, str] = {
    "S1": "localhost:8080",
    "S2": "localhost:8081",
    "S3": "localhost:8082",
    "S4": "localhost:8083",
    "S5": "localhost:8084",
}


class Router:
    """Sends each user's transfers and queries to the server that holds its account."""

    def __init__(self, pool: PeerPool, server_addresses: Iterable[str]) -> None:
        self.pool = pool
        self.server_addresses = list(server_addresses)

    def server_for(self, user: str) -> Any:
        """Return the server that holds ``user``'s account."""
        address = USER_SERVERS.get(user)
        if address is None:
            raise UnknownPeer(f"no server for user {user!r}")
        return self.pool.get(address)

    def process_txn_set(self, txn_set: TxnSet) -> list[TxnRequest]:
        """Mark the set's live servers, then queue each transfer at its sender's server.

        Every transfer is given a fresh message id; the queued copies are returned.
        """
        live_addresses = {
            USER_SERVERS[user] for user in txn_set.live_servers if user in USER_SERVERS
        }
        for address in self.server_addresses:
            self.pool.get(address).set_alive(address in live_addresses)

        queued = []
        for txn in txn_set.txns:
            server = self.server_for(txn.sender)
            txn.msg_id = str(uuid.uuid1())
            sent = copy.deepcopy(txn)
            server.enqueue(sent)
            queued.append(sent)
        return queued

    def print_balance(self, user: str) -> float:
        return self.server_for(user).print_balance()

    def print_logs(self, user: str) -> dict[str, TxnRequest]:
        return self.server_for(user).print_logs()

    def print_db(self, user: str) -> list[TxnRequest]:
        return self.server_for(user).print_db()

    def performance(self, user: str) -> PerformanceReport:
        report = self.server_for(user).performance()
        return PerformanceReport(
            latency=report.latency if report.latency else timedelta(0),
            throughput=report.throughput,
        )