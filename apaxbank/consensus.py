"""The prepare, promise, accept and accepted phases of the replicas' Paxos rounds."""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from .config import BallotFile, ServerSettings
from .datastore import DataStore, DataStoreError
from .messages import (
    Accept,
    Accepted,
    Ballot,
    Commit,
    Prepare,
    Promise,
    SyncRequest,
)
from .replica import AcceptedValue, PaxosError, PeerPool, Replica

log = logging.getLogger(__name__)


class PaxosReplica(Replica):
    """A replica that can lead a Paxos round or take part in one as acceptor."""

    prepare_timeout = 0.05
    accept_timeout = 0.05

    def __init__(
        self,
        settings: ServerSettings,
        datastore: DataStore,
        ballot_file: Optional[BallotFile] = None,
        pool: Optional[PeerPool] = None,
    ) -> None:
        super().__init__(settings, datastore, ballot_file, pool)
        self._majority_event: Optional[threading.Event] = None

    # ----------------------------------------------------------------- leader

    def send_prepare(self) -> bool:
        """Start a round with a fresh ballot; return whether a majority promised."""
        with self.lock:
            self.paxos_start_time = time.monotonic()
            self.majority_achieved = False
            self.reset_curr_val()
            self.reset_accept_val()
            self.update_ballot(self.ballot.term_number + 1, self.server_number)
            prepare = Prepare(
                ballot=self.ballot.copy(),
                last_committed_term=self.last_committed_term,
            )
        log.info("Server %d: sending prepare with ballot %r", self.server_number, prepare.ballot)

        started = time.monotonic()
        for address in self.settings.server_addresses:
            self._call_peer(address, lambda peer, msg: peer.receive_prepare(msg), prepare)

        remaining = self.prepare_timeout - (time.monotonic() - started)
        if remaining > 0:
            time.sleep(remaining)
        return self.finish_prepare_phase()

    def finish_prepare_phase(self) -> bool:
        """Check the promises gathered; on a majority, send the accept requests."""
        with self.lock:
            if self.curr_val.promise_count < self.settings.majority:
                log.info(
                    "Server %d: not enough promises received, canceling", self.server_number
                )
                self.reset_curr_val()
                return False
            log.info("Server %d: majority promises received", self.server_number)
            self.majority_achieved = True
            if self.curr_val.max_accept_val.term_number == 0:
                self.add_local_txns()
            accept = Accept(
                ballot=self.ballot.copy(),
                accept_val=list(self.curr_val.transactions),
                server_addresses=list(self.curr_val.server_addresses),
            )
        if not accept.accept_val:
            log.info("Server %d: no transactions to send", self.server_number)
            return True
        self.send_accept(accept)
        return True

    def receive_promise(self, req: Promise) -> None:
        """Count a promise and merge the value it carries."""
        if not req.promise_ack:
            raise PaxosError("promise not acknowledged, request canceled")
        with self.lock:
            if self.majority_achieved:
                raise PaxosError(
                    f"Server {self.server_number}: received a late promise, ignoring"
                )
            if (
                req.ballot.term_number != self.ballot.term_number
                or req.ballot.server_number != self.ballot.server_number
            ):
                raise PaxosError("ballot number mismatch, request canceled")

            tally = self.curr_val
            if (
                req.accept_num is None
                and req.accept_val is None
                and tally.max_accept_val.term_number == 0
            ):
                tally.transactions.extend(req.local_val)
            elif (
                req.accept_num is not None
                and req.accept_num.term_number > tally.max_accept_val.term_number
            ):
                tally.max_accept_val = req.accept_num
                tally.transactions = list(req.accept_val or [])

            tally.promise_count += 1
            tally.server_addresses.append(self._address_of(req.server_number))

    def send_accept(self, req: Accept) -> bool:
        """Ask the promising servers to accept a value; return whether it was committed."""
        with self.lock:
            if req.ballot.term_number < self.ballot.term_number:
                return False
            self._majority_event = threading.Event()
        log.info("Server %d: sending accept %r", self.server_number, req)
        for address in req.server_addresses:
            self._call_peer(address, lambda peer, msg: peer.receive_accept(msg), req)
        return self.wait_for_accepted()

    def wait_for_accepted(self) -> bool:
        """Commit once a majority has accepted; give the round up on timeout."""
        event = self._majority_event
        if event is None:
            raise PaxosError("no accept request is outstanding")
        if event.wait(self.accept_timeout):
            with self.lock:
                accepted = self.accept_val
                commit = Commit(
                    ballot=accepted.ballot.copy(),
                    accept_val=list(accepted.transactions),
                    server_addresses=list(self.accepted_servers.server_addresses),
                    last_committed_term=accepted.ballot.term_number,
                )
            log.info("Server %d: majority accepted received", self.server_number)
            self.send_commit(commit)
            return True
        log.info("Server %d: timed out waiting for accepted", self.server_number)
        with self.lock:
            self.reset_curr_val()
            self.reset_accept_val()
        return False

    def receive_accepted(self, req: Accepted) -> None:
        """Count an accepted reply and signal once a majority has accepted."""
        with self.lock:
            if (
                req.ballot.term_number != self.ballot.term_number
                or req.ballot.server_number != self.ballot.server_number
            ):
                raise PaxosError("invalid ballot")
            event = self._majority_event
            if event is None:
                raise PaxosError("majority handler is not initialized")
            if self.accept_val is None:
                self.accept_val = AcceptedValue(
                    ballot=req.ballot, transactions=list(req.accept_val)
                )
            self.accepted_servers.accepted_count += 1
            self.accepted_servers.server_addresses.append(
                self._address_of(req.server_number)
            )
            if self.accepted_servers.accepted_count >= self.settings.majority:
                event.set()

    # --------------------------------------------------------------- acceptor

    def receive_prepare(self, req: Prepare) -> None:
        """Answer a leader's prepare with a promise, or refuse it."""
        if not self.is_alive:
            raise PaxosError(f"Server {self.server_number}: server not alive")
        if not self.is_valid_prepare(req):
            raise PaxosError("not a valid prepare request")
        if not self.is_valid_ballot(req):
            raise PaxosError("not a valid ballot")
        self.update_ballot(req.ballot.term_number, req.ballot.server_number)
        self.send_promise(req.ballot.copy())

    def is_valid_prepare(self, req: Prepare) -> bool:
        """Return whether both sides have committed the same terms; sync them if not."""
        if req.last_committed_term < self.last_committed_term:
            # the leader is behind: send it what it missed
            self.send_sync_response(
                SyncRequest(
                    last_committed_term=req.last_committed_term,
                    server_number=req.ballot.server_number,
                )
            )
            return False
        if req.last_committed_term > self.last_committed_term:
            # this server is behind: ask the leader for what it missed
            delivered = self._call_peer(
                self._address_of(req.ballot.server_number),
                lambda peer, msg: peer.sync(msg),
                SyncRequest(
                    last_committed_term=self.last_committed_term,
                    server_number=self.server_number,
                ),
            )
            if not delivered:
                raise PaxosError("sync request to the leader failed")
            return False
        return True

    def is_valid_ballot(self, req: Prepare) -> bool:
        """Return whether the prepare's ballot is not older than this server's."""
        if req.ballot.term_number < self.ballot.term_number:
            try:
                self.send_sync_response(
                    SyncRequest(
                        last_committed_term=req.last_committed_term,
                        server_number=req.ballot.server_number,
                    )
                )
            except DataStoreError as exc:
                log.warning("Server %d: sync failed: %s", self.server_number, exc)
            return False
        return True

    def send_promise(self, ballot: Ballot) -> None:
        """Promise the leader of ``ballot``, with any accepted value or local log."""
        with self.lock:
            if ballot.term_number < self.ballot.term_number:
                return
            promise = Promise(ballot=ballot, server_number=self.server_number)
            if self.accept_val is None:
                promise.local_val = self.log_store.values()
            else:
                promise.accept_num = self.accept_val.ballot
                promise.accept_val = list(self.accept_val.transactions)
        leader = self._address_of(ballot.server_number)
        log.info("Server %d: sending promise to %s: %r", self.server_number, leader, promise)
        self._call_peer(leader, lambda peer, msg: peer.receive_promise(msg), promise)

    def receive_accept(self, req: Accept) -> None:
        """Accept the leader's value and reply with accepted."""
        with self.lock:
            if req.ballot.term_number < self.ballot.term_number:
                raise PaxosError("outdated ballot number")
            self.accept_val = AcceptedValue(
                ballot=req.ballot, transactions=list(req.accept_val)
            )
            accepted = Accepted(
                ballot=req.ballot,
                accept_val=list(req.accept_val),
                server_number=self.server_number,
            )
        self.send_accepted(accepted)

    def send_accepted(self, req: Accepted) -> None:
        """Tell the leader of the ballot that its value was accepted."""
        if req.ballot.server_number == self.server_number:
            return
        self._call_peer(
            self._address_of(req.ballot.server_number),
            lambda peer, msg: peer.receive_accepted(msg),
            req,
        )