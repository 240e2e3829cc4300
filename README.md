# apaxbank

apaxbank is a replicated bank ledger. Each server in a group holds the account
of one client. A server settles a transfer from its local balance when the
balance covers it, and records the transfer in its local log. When the balance
is too low, the server runs a round of a modified Paxos protocol. The round
gathers the transfers that its peers have logged and commits them to the
datastore of every replica that took part.

## Modules

- `apaxbank.messages`: the protocol messages as dataclasses (`Ballot`,
  `TxnRequest`, `TxnSet`, `Prepare`, `Promise`, `Accept`, `Accepted`,
  `Commit`, `SyncRequest`, `BalanceSnapshot`, `PerformanceReport`). It also
  holds `LogStore`, the in-memory log of uncommitted transfers, keyed by
  message id.
- `apaxbank.datastore`: `DataStore`, an SQLite store of user balances and
  committed transactions. Failures raise `DataStoreError`. A missing user
  raises `BalanceNotFound`, and an update that matches no row raises
  `NoRowsUpdated`. `DataStore.transaction()` is a context manager that rolls
  back on any exception.
- `apaxbank.config`:
  - `load_server_settings` and `load_client_settings` read JSON settings.
  - `parse_ballot` and `format_ballot` convert a ballot to and from
    `"<term>.<server>"`.
  - `BallotFile` keeps a server's current ballot on disk.
  - `address_of` maps server numbers 1 to 5 to `localhost:8080` through
    `localhost:8084`.
- `apaxbank.replica`:
  - `PeerPool` holds the servers this one can reach, by address. A missing
    address raises `UnknownPeer`.
  - `Replica` holds the replicated state and provides the commit and sync
    steps.
  - `PaxosError` is raised when a protocol step is refused.
  - `DuplicateTransactions` is raised when the transactions of a commit are
    already stored.
- `apaxbank.consensus`: `PaxosReplica` adds the prepare, promise, accept and
  accepted phases. A leader waits 50 ms for promises and 50 ms for accepted
  replies.
- `apaxbank.node`: `BankServer` queues transfers (`enqueue`), processes them
  (`poll_queue`, `process_txn`) and can poll its queue from a background
  thread (`start_worker`, `stop_worker`). It answers these queries:
  - `print_balance`
  - `print_logs`
  - `print_db`
  - `performance`
  - `server_balance`
- `apaxbank.router`: `Router` marks the servers of a set as alive or cut off.
  It then gives each transfer a fresh message id and queues it at the server
  of its sender. Users `S1` to `S5` belong to the servers at `localhost:8080`
  to `localhost:8084`. Queries about a user go to that user's server.
- `apaxbank.driver`:
  - `parse_rows` and `load_sets` read transaction sets from CSV.
  - `run` steps through the sets, answering commands.
  - `main` is the `apaxbank` command.

## Install

```
pip install .
```

## The `apaxbank` command

```
apaxbank [CSV] --server S1.json --server S2.json ... [--interval SECONDS]
```

- `CSV` is the file of transaction sets. It defaults to `lab1_Test.csv`.
- Each `--server` names the JSON settings of one bank server. The command
  starts that server in the current process and registers it at the address
  of its `server_number`.
- `--interval` is the number of seconds between queue polls. The default is
  0.1.

A server settings file looks like this:

```json
{
  "port": "8080",
  "server_number": 1,
  "client_name": "S1",
  "server_total": 5,
  "server_addresses": ["localhost:8081", "localhost:8082", "localhost:8083", "localhost:8084"],
  "database": "s1.db",
  "ballot_file": "s1_ballot.txt"
}
```

- `server_addresses` lists the server's peers.
- Relative `database` and `ballot_file` paths are taken from the directory of
  the settings file.
- `database` defaults to `:memory:` and `ballot_file` to `ballot.txt`.
- A ballot file that does not exist yet starts the ballot at `0.0`.
- A client with no row in the `users` table starts with a balance of 100.
  That balance is not written back to the table. Use `DataStore.add_user` to
  seed one.

For each set, the command prints the set and waits for a line of input, such
as Enter. It then sends the set to the servers and asks for a command:

- `next`: go on to the next set
- `balance`: print a user's balance. The server first catches up with its
  peers' commits and counts transfers to the user that are still in their
  logs.
- `db`: print the committed transactions of a user's server
- `log`: print the uncommitted log of a user's server
- `perf`: print total latency and throughput

After `balance`, `db`, `log` or `perf`, the command asks which user to query,
for example `S1`. It stops when input runs out or after the last set.

## Input format

Each CSV row has three columns:

1. the set number
2. one or more transfers, separated by `;`
3. the servers that are alive during the set

A row with an empty set number adds its transfers to the set above it.

```
1,"(S1, S2, 3)","[S1, S2, S3, S4, S5]"
,"(S2, S1, 5)",
2,"(S3, S4, 10); (S4, S3, 2)","[S1, S3, S4]"
```

## Using the library

```python
from apaxbank.config import ServerSettings
from apaxbank.datastore import DataStore
from apaxbank.messages import TxnRequest
from apaxbank.node import BankServer
from apaxbank.replica import PeerPool

pool = PeerPool()
store = DataStore(":memory:")
store.add_user("S1", 100)
settings = ServerSettings(server_number=1, client_name="S1", server_total=1)
server = BankServer(settings, store, pool=pool)
pool.register("localhost:8080", server)

server.set_alive(True)
server.enqueue(TxnRequest("S1", "S2", 30, msg_id="m1"))
server.poll_queue()
print(server.balance)        # 70
print(server.print_logs())   # {'m1': TxnRequest(...)}
```

## What it does not do

The servers do not talk over a network. Every server runs in the same
process, and peers reach each other through direct method calls on the
objects in a `PeerPool`. The `port` in the settings and `ClientSettings` are
read but not used to listen anywhere. No server or client process can be
started on its own.

## Tests

```
pip install .[test]
pytest
```