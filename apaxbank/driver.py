"""Feeds transaction sets from a CSV file to the bank servers, set by set."""

from __future__ import annotations

import argparse
import csv
import logging
import sys
from contextlib import ExitStack
from datetime import timedelta
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Optional, Sequence, TextIO, Union

from .config import BallotFile, address_of, load_server_settings
from .datastore import DataStore
from .messages import TxnRequest, TxnSet
from .node import DEFAULT_WORKER_INTERVAL, BankServer
from .replica import PeerPool
from .router import Router

log = logging.getLogger(__name__)

DEFAULT_INPUT = "lab1_Test.csv"

PROMPT = (
    "Type 'next' to process the next set, 'balance' to get balance, "
    "'db' to print database, 'log' to print log, or 'perf' to print performance"
)
USER_PROMPT = "Which user? (eg. 'S1' without quotes)"


def _to_int(text: str) -> int:
    try:
        return int(text.strip())
    except ValueError:
        return 0


def _to_float(text: str) -> float:
    try:
        return float(text.strip())
    except ValueError:
        return 0.0


def parse_rows(rows: Iterable[Sequence[str]]) -> dict[int, TxnSet]:
    """Build transaction sets from CSV rows of ``set, txns, live servers``.

    A row with an empty first column adds its transactions to the set before it.
    """
    sets: dict[int, TxnSet] = {}
    current = 0
    for row in rows:
        if not row:
            continue
        cells = list(row) + [""] * (3 - len(row))
        if cells[0] != "":
            current = _to_int(cells[0])
            live = [name.strip() for name in cells[2].strip("[] ").split(",")]
            sets.setdefault(current, TxnSet(set_no=current, live_servers=live))

        for item in cells[1].split(";"):
            parts = item.strip("() ").split(",")
            if len(parts) != 3:
                continue
            txn_set = sets.setdefault(current, TxnSet(set_no=current))
            txn_set.txns.append(
                TxnRequest(
                    sender=parts[0].strip(),
                    receiver=parts[1].strip(),
                    amount=_to_float(parts[2]),
                )
            )
    return sets


def load_sets(path: Union[str, Path]) -> dict[int, TxnSet]:
    with open(path, newline="", encoding="utf-8") as handle:
        return parse_rows(csv.reader(handle))


def _format_duration(duration: timedelta) -> str:
    total = duration.total_seconds()
    if total == 0:
        return "0s"
    sign = "-" if total < 0 else ""
    total = abs(total)
    if total < 1e-6:
        return f"{sign}{round(total * 1e9)}ns"
    if total < 1e-3:
        return f"{sign}{total * 1e6:g}µs"
    if total < 1:
        return f"{sign}{total * 1e3:g}ms"
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    text = f"{seconds:g}s"
    if hours:
        text = f"{int(hours)}h{int(minutes)}m{text}"
    elif minutes:
        text = f"{int(minutes)}m{text}"
    return sign + text


def _query(router: Router, command: str, user: str, out: TextIO) -> None:
    try:
        if command == "balance":
            print(f"Balance of {user}: {router.print_balance(user):.2f}", file=out)
        elif command == "db":
            print(f"DB txns of user {user}: {router.print_db(user)!r}", file=out)
        elif command == "log":
            print(f"Logs of user {user}: {router.print_logs(user)!r}", file=out)
        elif command == "perf":
            report = router.performance(user)
            print(f"Total Latency till now: {_format_duration(report.latency)}", file=out)
            print(f"Throughput: {report.throughput:.2f} transactions/sec", file=out)
    except Exception as exc:  # a failed query is reported and the session goes on
        print(f"Error: {exc}", file=out)


def run(
    router: Router,
    sets: Mapping[int, TxnSet],
    lines: Iterable[str],
    out: TextIO,
) -> int:
    """Process the sets in order, answering commands between them.

    Returns the number of sets processed; stops early when input runs out.
    """
    source: Iterator[str] = iter(lines)
    processed = 0
    for set_no in sorted(sets):
        txn_set = sets[set_no]
        print(
            f"Processing Set {set_no}: Txns: {txn_set.txns} "
            f"LiveServers: {txn_set.live_servers}",
            file=out,
        )
        if next(source, None) is None:
            return processed
        try:
            router.process_txn_set(txn_set)
        except Exception as exc:  # failures of a set do not stop the session
            log.warning("processing set %d failed: %s", set_no, exc)
        processed += 1

        while True:
            print(PROMPT, file=out)
            command = next(source, None)
            if command is None:
                return processed
            command = command.strip()
            if command == "next":
                break
            if command in ("balance", "db", "log", "perf"):
                print(USER_PROMPT, file=out)
                user = next(source, None)
                if user is None:
                    return processed
                _query(router, command, user.strip(), out)
            else:
                print("Unknown command", file=out)
    print("All sets processed.", file=out)
    return processed


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Run transaction sets against a group of bank servers."
    )
    parser.add_argument("csv", nargs="?", default=DEFAULT_INPUT, help="transaction sets")
    parser.add_argument(
        "--server",
        action="append",
        default=[],
        metavar="SETTINGS",
        help="JSON settings of a bank server (repeatable)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=DEFAULT_WORKER_INTERVAL,
        help="seconds between queue polls",
    )
    args = parser.parse_args(argv)

    try:
        sets = load_sets(args.csv)
    except (OSError, csv.Error) as exc:
        print(f"Error loading CSV: {exc}")
        return 1

    pool = PeerPool()
    addresses: list[str] = []
    with ExitStack() as stack:
        for settings_path in args.server:
            settings = load_server_settings(settings_path)
            datastore = stack.enter_context(DataStore(settings.database))
            server = BankServer(settings, datastore, BallotFile(settings.ballot_file), pool)
            address = address_of(settings.server_number)
            pool.register(address, server)
            addresses.append(address)
            server.start_worker(args.interval)
            stack.callback(server.stop_worker)

        router = Router(pool, addresses)
        run(router, sets, (line.rstrip("\n") for line in sys.stdin), sys.stdout)
    return 0