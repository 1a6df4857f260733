"""Tests for CLI commands: study, sync, maintenance, serve and config."""

import json
import logging
from dataclasses import replace
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from memora.application.sync import SyncReport
from memora.domain.errors import MirrorCorruptError
from memora.infrastructure.mirror.store import LocalMirrorStore
from memora.interface.cli import app

runner = CliRunner()


@pytest.fixture
def mirror(mock_home, tmp_path, monkeypatch, seed_deck):
    """A seeded mirror at the default location under MEMORA_DATA_DIR."""
    data_dir = tmp_path / "data"
    monkeypatch.setenv("MEMORA_DATA_DIR", str(data_dir))
    path = data_dir / "mirror.db"
    with LocalMirrorStore(path) as store:
        seed_deck(store, card_ids=("c1", "c2"))
    return path


def test_cli_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "memora" in result.stdout
    assert "sync" in result.stdout
    assert "review" in result.stdout


# --- Study ---


def test_next_json(mirror):
    result = runner.invoke(app, ["next", "--json"])

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["card"]["id"] == "c1"
    assert data["counts"] == {"new": 2, "learning": 0, "review": 0}
    assert data["previews"] == {"again": "1m", "hard": "1m", "good": "10m", "easy": "4d"}


def test_next_text(mirror):
    result = runner.invoke(app, ["next", "--deck", "d1"])

    assert result.exit_code == 0
    assert "New: 2  Learning: 0  Review: 0" in result.stdout
    assert "c1 (recognition, NEW)" in result.stdout


def test_next_unknown_deck(mirror):
    result = runner.invoke(app, ["next", "-d", "nope"])
    assert result.exit_code == 1


def test_review_then_next(mirror):
    result = runner.invoke(app, ["review", "c1", "good", "--time-ms", "2500"])

    assert result.exit_code == 0
    assert "c1 -> LEARNING" in result.stdout
    with LocalMirrorStore(mirror) as store:
        assert len(store.pending_events()) == 1

    follow = json.loads(runner.invoke(app, ["next", "--json"]).stdout)
    assert follow["card"]["id"] == "c2"


@pytest.mark.parametrize("args", [["review", "c1", "meh"], ["review", "nope", "good"]])
def test_review_errors(mirror, args):
    assert runner.invoke(app, args).exit_code == 1


def test_counts(mirror):
    result = runner.invoke(app, ["counts"])

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["total"] == {"new": 2, "learning": 0, "review": 0}
    assert data["decks"]["d1"]["name"] == "Deck d1"


def test_mirror_option_overrides_location(mock_home, tmp_path, seed_deck):
    path = tmp_path / "elsewhere.db"
    with LocalMirrorStore(path) as store:
        seed_deck(store, card_ids=("only",))

    result = runner.invoke(app, ["--mirror", str(path), "counts", "--deck", "d1"])

    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"new": 1, "learning": 0, "review": 0}


# --- Sync ---


@patch("memora.interface.cli._run_sync", new_callable=AsyncMock)
def test_sync_command(mock_sync, mirror):
    mock_sync.return_value = SyncReport(pushed=2, cards=3, events=1)

    result = runner.invoke(app, ["sync"])

    assert result.exit_code == 0
    assert "Pushed 2, pulled 3 cards and 1 events" in result.stdout
    assert mock_sync.await_args.kwargs == {"full": False}


@patch("memora.interface.cli._run_sync", new_callable=AsyncMock)
def test_sync_reports_offline(mock_sync, mirror):
    mock_sync.return_value = SyncReport(errors=["Cannot reach server"])

    result = runner.invoke(app, ["sync"])

    assert result.exit_code == 0
    assert "Pushed 0" in result.stdout


@patch("memora.interface.cli._run_sync", new_callable=AsyncMock)
def test_sync_corrupt_mirror_exits_2(mock_sync, mirror):
    mock_sync.side_effect = MirrorCorruptError("still broken")

    assert runner.invoke(app, ["sync"]).exit_code == 2


@patch("memora.interface.cli._run_sync", new_callable=AsyncMock)
def test_resync_skips_healthy_mirror(mock_sync, mirror):
    result = runner.invoke(app, ["resync"])

    assert result.exit_code == 0
    assert "consistent" in result.stdout
    mock_sync.assert_not_awaited()


@patch("memora.interface.cli._run_sync", new_callable=AsyncMock)
def test_resync_force(mock_sync, mirror):
    mock_sync.return_value = SyncReport(resynced=True, cards=2)

    result = runner.invoke(app, ["resync", "--force"])

    assert result.exit_code == 0
    assert "Resynced 2 cards" in result.stdout
    assert mock_sync.await_args.kwargs == {"full": True}


# --- Maintenance ---


def test_verify_and_fix(mirror):
    runner.invoke(app, ["review", "c1", "again"])
    assert runner.invoke(app, ["verify"]).exit_code == 0

    with LocalMirrorStore(mirror) as store:
        store.upsert_card(replace(store.get_card("c1"), learning_step=1))

    drifted = runner.invoke(app, ["verify"])
    assert drifted.exit_code == 1
    assert "c1" in drifted.stdout

    fixed = runner.invoke(app, ["verify", "--fix"])
    assert fixed.exit_code == 0
    assert runner.invoke(app, ["verify"]).exit_code == 0


def test_stats(mirror):
    result = runner.invoke(app, ["stats"])

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["cards"] == 2
    assert data["schema_version"] >= 1
    assert data["retrievability"] == {"d1": None}


@patch("uvicorn.run")
def test_serve_command(mock_run):
    result = runner.invoke(app, ["serve", "--port", "9000"])

    assert result.exit_code == 0
    mock_run.assert_called_with("memora.server:app", host="127.0.0.1", port=9000, reload=False)


# --- Config ---


def test_config_show(mock_home):
    result = runner.invoke(app, ["--timezone", "Europe/Berlin", "config", "show"])

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["timezone"] == "Europe/Berlin"
    assert data["mirror_path"].endswith("mirror.db")


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    previous = root.level
    yield root
    root.setLevel(previous)


def test_log_level_follows_config(mirror, monkeypatch, root_logger):
    monkeypatch.setenv("MEMORA_VERBOSE", "2")
    assert runner.invoke(app, ["stats"]).exit_code == 0
    assert root_logger.level == logging.DEBUG

    # An explicit -v beats the environment
    assert runner.invoke(app, ["-v", "stats"]).exit_code == 0
    assert root_logger.level == logging.INFO
