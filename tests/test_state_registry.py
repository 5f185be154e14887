"""Instance registry and ``key=value`` record codec tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from gsmctl.errors import NotFoundError, ParseError
from gsmctl.records import format_records, parse_bool, parse_records, read_records
from gsmctl.state import InstanceRegistry


def test_parse_records_handles_quotes_and_comments() -> None:
    """Comments, quoting styles and ``export`` prefixes are understood."""
    text = (
        "# Factorio\n"
        "\n"
        "name=factorio\n"
        "export ports=34197/udp\n"
        "executable_arguments=\"--start-server $instance_saves_dir/world.zip\"\n"
        "stop_command='/quit'\n"
        "level_name=default # trailing comment\n"
        'escaped="say \\"hi\\""\n'
        "empty=\n"
    )

    values = parse_records(text, source="factorio.bp")

    assert values == {
        "name": "factorio",
        "ports": "34197/udp",
        "executable_arguments": "--start-server $instance_saves_dir/world.zip",
        "stop_command": "/quit",
        "level_name": "default",
        "escaped": 'say "hi"',
        "empty": "",
    }


@pytest.mark.parametrize(
    "line",
    ["no separator here", "1bad=value", 'name="unterminated', "name='unterminated"],
)
def test_parse_records_rejects_malformed_lines(line: str) -> None:
    """Malformed lines raise ParseError naming the source and line."""
    with pytest.raises(ParseError, match=r"broken\.bp:2"):
        parse_records(f"ok=1\n{line}\n", source="broken.bp")


def test_format_records_quotes_only_when_needed() -> None:
    """Plain values stay bare; anything with spaces or quotes is double quoted."""
    text = format_records(
        {
            "name": "alpha",
            "auto_update": True,
            "steam_app_id": 896660,
            "arguments": 'say "hi" now',
            "save_command": None,
        }
    )

    assert text.splitlines() == [
        "name=alpha",
        "auto_update=true",
        "steam_app_id=896660",
        'arguments="say \\"hi\\" now"',
        "save_command=",
    ]
    assert parse_records(text)["arguments"] == 'say "hi" now'


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("true", True), ("1", True), ("YES", True), ("false", False), ("", False), (None, False)],
)
def test_parse_bool(raw: str | None, expected: bool) -> None:
    """Textual booleans from record files."""
    assert parse_bool(raw) is expected


def test_read_missing_record_raises(tmp_path: Path) -> None:
    """Reading a record that does not exist is a NotFoundError."""
    with pytest.raises(NotFoundError):
        read_records(tmp_path / "missing.ini")


def test_write_and_find_roundtrip(tmp_path: Path) -> None:
    """Records are grouped by blueprint but found by name alone."""
    registry = InstanceRegistry(tmp_path)

    path = registry.write(
        "factorio", "factorio-42", {"name": "factorio-42", "blueprint": "factorio"}
    )

    assert path == tmp_path / "factorio" / "factorio-42.ini"
    assert (path.stat().st_mode & 0o777) == 0o640
    assert registry.find("factorio-42") == path
    assert registry.read("factorio-42")["blueprint"] == "factorio"
    assert registry.names() == {"factorio-42"}


def test_iter_paths_sorted_by_instance_name(tmp_path: Path) -> None:
    """Listing spans blueprint directories and sorts by name."""
    registry = InstanceRegistry(tmp_path)
    registry.write("valheim", "beta", {"name": "beta"})
    registry.write("factorio", "alpha", {"name": "alpha"})
    registry.write("factorio", "gamma", {"name": "gamma"})

    assert [path.stem for path in registry.iter_paths()] == ["alpha", "beta", "gamma"]


def test_remove_prunes_empty_blueprint_directory(tmp_path: Path) -> None:
    """Removing the last record of a blueprint removes its directory."""
    registry = InstanceRegistry(tmp_path)
    registry.write("factorio", "alpha", {"name": "alpha"})

    registry.remove("alpha")

    assert not (tmp_path / "factorio").exists()
    with pytest.raises(NotFoundError):
        registry.find("alpha")


def test_missing_root_lists_nothing(tmp_path: Path) -> None:
    """A registry whose directory does not exist yet is empty."""
    registry = InstanceRegistry(tmp_path / "absent")

    assert registry.names() == set()
    assert registry.exists("alpha") is False
