"""Settings files, the ballot file and the fixed server address map."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from .messages import Ballot

SERVER_ADDRESSES: dict[int, str] = {
    1: "localhost:8080",
    2: "localhost:8081",
    3: "localhost:8082",
    4: "localhost:8083",
    5: "localhost:8084",
}

_MEMORY_DB = ":memory:"


def address_of(server_number: int) -> str:
    """Return the network address of a server by its number."""
    try:
        return SERVER_ADDRESSES[server_number]
    except KeyError:
        raise KeyError(f"no address known for server {server_number}") from None


@dataclass
class ServerSettings:
    port: str = ""
    server_number: int = 0
    client_name: str = ""
    server_total: int = 0
    server_addresses: list[str] = field(default_factory=list)
    database: str = _MEMORY_DB
    ballot_file: str = "ballot.txt"

    @property
    def majority(self) -> int:
        return self.server_total // 2 + 1


@dataclass
class ClientSettings:
    port: str = ""
    server_addresses: list[str] = field(default_factory=list)


def _read_json_object(path: Path) -> dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: settings must be a JSON object")
    return data


def _resolve(base: Path, value: str) -> str:
    if value == _MEMORY_DB or Path(value).is_absolute():
        return value
    return str(base / value)


def load_server_settings(path: Union[str, os.PathLike]) -> ServerSettings:
    """Read a server's JSON settings; relative file paths are taken from its directory."""
    path = Path(path)
    data = _read_json_object(path)
    defaults = ServerSettings()
    return ServerSettings(
        port=str(data.get("port", defaults.port)),
        server_number=int(data.get("server_number", defaults.server_number)),
        client_name=str(data.get("client_name", defaults.client_name)),
        server_total=int(data.get("server_total", defaults.server_total)),
        server_addresses=[str(a) for a in data.get("server_addresses", [])],
        database=_resolve(path.parent, str(data.get("database", defaults.database))),
        ballot_file=_resolve(path.parent, str(data.get("ballot_file", defaults.ballot_file))),
    )


def load_client_settings(path: Union[str, os.PathLike]) -> ClientSettings:
    data = _read_json_object(Path(path))
    return ClientSettings(
        port=str(data.get("port", "")),
        server_addresses=[str(a) for a in data.get("server_addresses", [])],
    )


def parse_ballot(text: str) -> Ballot:
    """Parse ``"<term>.<server>"`` into a ballot."""
    parts = text.strip().split(".")
    if len(parts) < 2:
        raise ValueError(f"malformed ballot: {text!r}")
    try:
        return Ballot(term_number=int(parts[0]), server_number=int(parts[1]))
    except ValueError:
        raise ValueError(f"malformed ballot: {text!r}") from None


def format_ballot(ballot: Ballot) -> str:
    return f"{ballot.term_number}.{ballot.server_number}"


class BallotFile:
    """The file in which a server keeps its current ballot."""

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self.path = Path(path)

    def read(self) -> Ballot:
        return parse_ballot(self.path.read_text(encoding="utf-8"))

    def write(self, ballot: Ballot) -> None:
        self.path.write_text(format_ballot(ballot), encoding="utf-8")