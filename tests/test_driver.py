import io
from datetime import timedelta

import pytest

from apaxbank.driver import load_sets, main, parse_rows, run
from apaxbank.messages import PerformanceReport, TxnRequest, TxnSet


class FakeRouter:
    def __init__(self, fail=False):
        self.processed = []
        self.fail = fail

    def process_txn_set(self, txn_set):
        self.processed.append(txn_set.set_no)

    def print_balance(self, user):
        if self.fail:
            raise RuntimeError("boom")
        return 12.5

    def print_db(self, user):
        return [TxnRequest(user, "S2", 1.0, "m1", 1)]

    def print_logs(self, user):
        return {}

    def performance(self, user):
        return PerformanceReport(latency=timedelta(milliseconds=1500), throughput=2.0)


ROWS = [
    ["1", "(S1, S2, 5); (S3, S1, 2)", "[S1, S2, S3]"],
    ["", "(S2, S4, 1)", ""],
    ["2", "(S1, S2, 3)", "[S1]"],
]


def test_parse_rows_groups_continuation_rows():
    sets = parse_rows(ROWS)
    assert sorted(sets) == [1, 2]
    assert sets[1].live_servers == ["S1", "S2", "S3"]
    assert [(t.sender, t.receiver, t.amount) for t in sets[1].txns] == [
        ("S1", "S2", 5.0),
        ("S3", "S1", 2.0),
        ("S2", "S4", 1.0),
    ]
    assert sets[2].live_servers == ["S1"]
    assert [t.msg_id for t in sets[2].txns] == [""]


def test_parse_rows_skips_malformed_txns():
    sets = parse_rows([["1", "(S1, S2); (S1, S2, 4)", "[S1]"], []])
    assert [t.amount for t in sets[1].txns] == [4.0]


def test_load_sets_from_csv(tmp_path):
    path = tmp_path / "sets.csv"
    path.write_text(
        '1,"(S1, S2, 5); (S3, S1, 2)","[S1, S2, S3]"\n,"(S2, S4, 1)",\n2,"(S1, S2, 3)",[S1]\n',
        encoding="utf-8",
    )
    assert load_sets(path) == parse_rows(ROWS)


def test_run_processes_sets_and_answers_queries():
    router = FakeRouter()
    sets = {2: TxnSet(2), 1: TxnSet(1)}
    out = io.StringIO()
    lines = ["", "balance", "S1", "what", "next", "", "perf", "S2", "next"]
    count = run(router, sets, lines, out)
    text = out.getvalue()
    assert count == 2
    assert router.processed == [1, 2]
    assert "Balance of S1: 12.50" in text
    assert "Unknown command" in text
    assert "Total Latency till now: 1.5s" in text
    assert "Throughput: 2.00 transactions/sec" in text
    assert text.rstrip().endswith("All sets processed.")


def test_run_prints_db():
    out = io.StringIO()
    run(FakeRouter(), {1: TxnSet(1)}, ["", "db", "S3", "next"], out)
    assert "DB txns of user S3:" in out.getvalue()
    assert "'m1'" in out.getvalue()


def test_run_reports_errors():
    out = io.StringIO()
    run(FakeRouter(fail=True), {1: TxnSet(1)}, ["", "balance", "S1", "next"], out)
    assert "Error: boom" in out.getvalue()


def test_run_stops_when_input_ends():
    router = FakeRouter()
    out = io.StringIO()
    count = run(router, {1: TxnSet(1), 2: TxnSet(2)}, ["", "next"], out)
    assert count == 1
    assert router.processed == [1]
    assert "All sets processed." not in out.getvalue()


def test_main_missing_csv(tmp_path, capsys):
    assert main([str(tmp_path / "absent.csv")]) == 1
    assert "Error loading CSV" in capsys.readouterr().out


def test_main_runs_sets_against_servers(tmp_path, capsys, monkeypatch):
    csv_path = tmp_path / "sets.csv"
    csv_path.write_text('1,"(S1, S2, 5)",[S1]\n', encoding="utf-8")
    settings = tmp_path / "s1.json"
    settings.write_text(
        '{"port": "8080", "server_number": 1, "client_name": "S1", '
        '"server_total": 1, "server_addresses": []}',
        encoding="utf-8",
    )
    monkeypatch.setattr("sys.stdin", io.StringIO("\ndb\nS1\nnext\n"))
    assert main([str(csv_path), "--server", str(settings), "--interval", "0.01"]) == 0
    text = capsys.readouterr().out
    assert "DB txns of user S1: []" in text
    assert "All sets processed." in text