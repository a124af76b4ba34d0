from datetime import datetime, timezone
from pathlib import Path

from relayhub.admin.models import Endpoint
from relayhub.cli import DEFAULT_PORT, _parse_args
from scripts.check_store import find_problems, main

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _endpoint(name: str, order: int, **overrides) -> Endpoint:
    fields = dict(
        name=name,
        api_url=f"https://{name}.example.com",
        api_key="sk-0000",
        enabled=True,
        sort_order=order,
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return Endpoint(**fields)


def test_find_problems():
    assert find_problems([_endpoint("a", 0), _endpoint("b", 1)]) == []
    problems = find_problems(
        [
            _endpoint("a", 0, transformer="openai"),
            _endpoint("b", 3, api_url="https://b.example.com/"),
        ]
    )
    assert problems == [
        "sortOrder values [0, 3] are not 0..1",
        "Endpoint a (openai) has no model",
        "Endpoint b apiUrl has a trailing slash",
    ]


def test_main_repairs_order(storage, capsys):
    storage.save_endpoint(_endpoint("a", 2))
    storage.save_endpoint(_endpoint("b", 7))

    assert main(["--db", str(storage.path)]) == 1
    assert "not 0..1" in capsys.readouterr().out

    assert main(["--db", str(storage.path), "--repair"]) == 0
    out = capsys.readouterr().out
    assert "Renumbered 2 endpoints" in out
    assert [e.sort_order for e in storage.get_endpoints()] == [0, 1]


def test_main_missing_store(tmp_path: Path, capsys):
    assert main(["--db", str(tmp_path / "nope.db")]) == 1
    assert "does not exist" in capsys.readouterr().out


def test_cli_defaults(tmp_path: Path):
    args = _parse_args([])
    assert args.port == DEFAULT_PORT == 3021
    assert args.reload is False

    args = _parse_args(["--db", str(tmp_path / "x.db"), "--no-reload", "--log-level", "debug"])
    assert args.db == tmp_path / "x.db"
    assert args.log_level == "debug"
