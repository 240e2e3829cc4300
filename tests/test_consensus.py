import pytest

from apaxbank.config import BallotFile, ServerSettings, address_of
from apaxbank.consensus import PaxosReplica
from apaxbank.datastore import DataStore
from apaxbank.messages import (
    Accept,
    Accepted,
    Ballot,
    Prepare,
    Promise,
    TxnRequest,
)
from apaxbank.replica import PaxosError, PeerPool

INITIAL = 100.0


@pytest.fixture
def cluster():
    pool = PeerPool()
    numbers = [1, 2, 3]
    replicas = {}
    for n in numbers:
        settings = ServerSettings(
            server_number=n,
            client_name=f"S{n}",
            server_total=3,
            server_addresses=[address_of(m) for m in numbers if m != n],
        )
        store = DataStore(":memory:")
        store.add_user(f"S{n}", INITIAL)
        replica = PaxosReplica(settings, store, None, pool)
        replica.is_alive = True
        replica.prepare_timeout = 0.01
        replica.accept_timeout = 0.01
        pool.register(address_of(n), replica)
        replicas[n] = replica
    yield replicas
    for replica in replicas.values():
        replica.datastore.close()


def txn(msg_id, sender, receiver, amount, term=0):
    return TxnRequest(sender=sender, receiver=receiver, amount=amount, msg_id=msg_id, term=term)


def test_full_round_commits_everywhere(cluster):
    leader = cluster[1]
    leader.log_store.add(txn("m1", "S1", "S2", 10.0))
    cluster[2].log_store.add(txn("m2", "S2", "S3", 5.0))

    assert leader.send_prepare() is True

    for replica in cluster.values():
        stored = replica.datastore.all_transactions()
        assert {t.msg_id for t in stored} == {"m1", "m2"}
        assert all(t.term == leader.ballot.term_number for t in stored)
        assert len(replica.log_store) == 0
        assert replica.last_committed_term == leader.ballot.term_number
        assert replica.ballot == leader.ballot
    assert leader.ballot == Ballot(1, 1)
    assert cluster[2].balance == pytest.approx(INITIAL + 10.0)
    assert cluster[3].balance == pytest.approx(INITIAL + 5.0)
    assert cluster[2].datastore.get_balance("S2") == pytest.approx(INITIAL + 10.0)
    assert len(leader.latency_queue) == 1
    assert leader.accept_val is None


def test_ballot_is_persisted(cluster, tmp_path):
    leader = cluster[1]
    leader.ballot_file = BallotFile(tmp_path / "ballot.txt")
    leader.send_prepare()
    assert leader.ballot_file.read() == leader.ballot
    assert (tmp_path / "ballot.txt").read_text() == "1.1"


def test_no_majority_resets_tally(cluster):
    leader = cluster[1]
    leader.log_store.add(txn("m1", "S1", "S2", 10.0))
    cluster[2].is_alive = False
    cluster[3].is_alive = False

    assert leader.send_prepare() is False
    assert leader.majority_achieved is False
    assert leader.curr_val.promise_count == 1
    assert leader.curr_val.transactions == []
    assert leader.datastore.all_transactions() == []
    assert leader.ballot.term_number == 1


def test_receive_prepare_refused_when_dead(cluster):
    follower = cluster[2]
    follower.is_alive = False
    with pytest.raises(PaxosError):
        follower.receive_prepare(Prepare(ballot=Ballot(1, 1)))
    assert follower.ballot == Ballot()


def test_receive_promise_errors(cluster):
    leader = cluster[1]
    leader.update_ballot(2, 1)
    with pytest.raises(PaxosError):
        leader.receive_promise(Promise(ballot=Ballot(2, 1), server_number=2, promise_ack=False))
    with pytest.raises(PaxosError):
        leader.receive_promise(Promise(ballot=Ballot(1, 1), server_number=2))
    leader.majority_achieved = True
    with pytest.raises(PaxosError):
        leader.receive_promise(Promise(ballot=Ballot(2, 1), server_number=2))
    assert leader.curr_val.promise_count == 1


def test_highest_accepted_value_wins(cluster):
    leader = cluster[1]
    leader.update_ballot(2, 1)
    first = txn("a", "S2", "S3", 1.0)
    second = txn("b", "S3", "S1", 2.0)
    leader.receive_promise(
        Promise(ballot=Ballot(2, 1), server_number=2, accept_num=Ballot(1, 3), accept_val=[first])
    )
    leader.receive_promise(
        Promise(ballot=Ballot(2, 1), server_number=3, accept_num=Ballot(1, 2), accept_val=[second])
    )
    assert leader.curr_val.max_accept_val == Ballot(1, 3)
    assert leader.curr_val.transactions == [first]
    assert leader.curr_val.promise_count == 3
    assert leader.curr_val.server_addresses == [address_of(2), address_of(3)]


def test_local_values_merge_without_accepted_value(cluster):
    leader = cluster[1]
    leader.update_ballot(2, 1)
    local = txn("c", "S2", "S1", 3.0)
    leader.receive_promise(Promise(ballot=Ballot(2, 1), server_number=2, local_val=[local]))
    assert leader.curr_val.transactions == [local]
    assert leader.curr_val.max_accept_val == Ballot()


def test_previously_accepted_value_replaces_local_log(cluster):
    leader = cluster[1]
    leader.update_ballot(2, 1)
    leader.log_store.add(txn("own", "S1", "S3", 4.0))
    promised = txn("old", "S2", "S3", 1.0)
    leader.receive_promise(
        Promise(ballot=Ballot(2, 1), server_number=2, accept_num=Ballot(1, 3), accept_val=[promised])
    )
    assert leader.finish_prepare_phase() is True
    assert [t.msg_id for t in leader.datastore.all_transactions()] == ["old"]
    assert [t.msg_id for t in cluster[2].datastore.all_transactions()] == ["old"]
    assert "own" in leader.log_store


def test_send_promise_with_older_ballot_is_dropped(cluster):
    leader, follower = cluster[1], cluster[2]
    leader.update_ballot(1, 1)
    follower.update_ballot(3, 3)
    follower.send_promise(Ballot(1, 1))
    assert leader.curr_val.promise_count == 1
    assert leader.curr_val.server_addresses == []

    follower.update_ballot(1, 1)
    follower.send_promise(Ballot(1, 1))
    assert leader.curr_val.promise_count == 2
    assert leader.curr_val.server_addresses == [address_of(2)]


def test_send_promise_carries_accepted_value(cluster):
    leader, follower = cluster[1], cluster[2]
    leader.update_ballot(2, 1)
    accepted = txn("x", "S3", "S2", 7.0)
    follower.receive_accept(Accept(ballot=Ballot(1, 3), accept_val=[accepted]))
    follower.send_promise(Ballot(2, 1))
    assert leader.curr_val.max_accept_val == Ballot(1, 3)
    assert [t.msg_id for t in leader.curr_val.transactions] == ["x"]


def test_receive_accept_outdated(cluster):
    follower = cluster[2]
    follower.update_ballot(5, 3)
    with pytest.raises(PaxosError):
        follower.receive_accept(Accept(ballot=Ballot(4, 1), accept_val=[txn("m", "S1", "S2", 1.0)]))
    assert follower.accept_val is None


def test_receive_accepted_errors(cluster):
    leader = cluster[1]
    leader.update_ballot(1, 1)
    with pytest.raises(PaxosError):
        leader.receive_accepted(Accepted(ballot=Ballot(1, 1), server_number=2))
    with pytest.raises(PaxosError):
        leader.receive_accepted(Accepted(ballot=Ballot(1, 2), server_number=2))
    assert leader.accepted_servers.accepted_count == 1


def test_wait_for_accepted_without_request():
    settings = ServerSettings(
        server_number=1,
        client_name="S1",
        server_total=3,
        server_addresses=[address_of(2), address_of(3)],
    )
    store = DataStore(":memory:")
    try:
        replica = PaxosReplica(settings, store, None, PeerPool())
        with pytest.raises(PaxosError):
            replica.wait_for_accepted()
        assert replica.datastore.all_transactions() == []
    finally:
        store.close()


def test_accept_times_out_without_acceptors(cluster):
    leader = cluster[1]
    leader.update_ballot(1, 1)
    leader.curr_val.promise_count = 3
    result = leader.send_accept(
        Accept(ballot=Ballot(1, 1), accept_val=[txn("m", "S1", "S2", 1.0)], server_addresses=[])
    )
    assert result is False
    assert leader.accept_val is None
    assert leader.curr_val.promise_count == 1
    assert leader.datastore.all_transactions() == []


def test_send_accepted_to_self_is_skipped(cluster):
    leader = cluster[1]
    leader.update_ballot(1, 1)
    leader.send_accepted(Accepted(ballot=Ballot(1, 1), server_number=1))
    assert leader.accepted_servers.accepted_count == 1


def test_is_valid_ballot_rejects_older_term(cluster):
    follower = cluster[2]
    follower.update_ballot(4, 2)
    assert follower.is_valid_ballot(Prepare(ballot=Ballot(3, 1))) is False
    assert follower.is_valid_ballot(Prepare(ballot=Ballot(4, 1))) is True


def test_slow_leader_is_synced(cluster):
    leader, follower = cluster[1], cluster[2]
    committed = txn("done", "S3", "S1", 6.0, term=2)
    with follower.datastore.transaction():
        follower.datastore.insert_transaction(committed)
    follower.last_committed_term = 2

    assert follower.is_valid_prepare(Prepare(ballot=Ballot(3, 1), last_committed_term=0)) is False
    assert [t.msg_id for t in leader.datastore.all_transactions()] == ["done"]
    assert leader.last_committed_term == 2
    assert leader.balance == pytest.approx(INITIAL + 6.0)


def test_slow_follower_asks_leader(cluster):
    leader, follower = cluster[1], cluster[2]
    committed = txn("done", "S1", "S2", 8.0, term=2)
    with leader.datastore.transaction():
        leader.datastore.insert_transaction(committed)
    leader.last_committed_term = 2

    assert follower.is_valid_prepare(Prepare(ballot=Ballot(3, 1), last_committed_term=2)) is False
    assert [t.msg_id for t in follower.datastore.all_transactions()] == ["done"]
    assert follower.last_committed_term == 2
    with pytest.raises(PaxosError):
        follower.receive_prepare(Prepare(ballot=Ballot(4, 1), last_committed_term=5))


def test_equal_committed_terms_are_valid(cluster):
    assert cluster[2].is_valid_prepare(Prepare(ballot=Ballot(1, 1), last_committed_term=0)) is True