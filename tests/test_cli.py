"""CLI smoke tests against a throwaway data directory."""
import pytest
from typer.testing import CliRunner

from daytrace import config as config_module
from daytrace.cli.app import app
from daytrace.config import load_config
from daytrace.storage.db import Database

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "config.yaml")
    monkeypatch.setenv("DAYTRACE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("DAYTRACE_PROVIDER", "none")


def _db() -> Database:
    return Database(load_config().storage.db_path)


class TestCli:
    def test_ingest_registers_chunk(self, tmp_path):
        clip = tmp_path / "clip.mp4"
        clip.write_bytes(b"video")

        result = runner.invoke(app, ["ingest", str(clip), "--start", "2024-05-01T09:00:00", "--duration", "60"])

        assert result.exit_code == 0, result.output
        assert "Registered chunk" in result.output
        chunk = _db().get_chunk(1)
        assert chunk.duration == 60

    def test_ingest_rejects_bad_start(self, tmp_path):
        clip = tmp_path / "clip.mp4"
        clip.write_bytes(b"video")

        result = runner.invoke(app, ["ingest", str(clip), "--start", "yesterday", "--duration", "60"])

        assert result.exit_code == 1
        assert "Invalid --start" in result.output

    def test_cards_for_empty_day(self):
        result = runner.invoke(app, ["cards", "2024-05-01"])
        assert result.exit_code == 0
        assert "No timeline cards" in result.output

    def test_batches_empty(self):
        result = runner.invoke(app, ["batches"])
        assert result.exit_code == 0
        assert "No batches yet" in result.output

    def test_reprocess_unknown_day_fails(self):
        result = runner.invoke(app, ["reprocess", "day", "2023-01-01"])
        assert result.exit_code == 1
        assert "No batches found for 2023-01-01" in result.output

    def test_analyze_without_recordings(self):
        result = runner.invoke(app, ["analyze"])
        assert result.exit_code == 0
        assert "Nothing to analyze" in result.output

    def test_config_show(self):
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "kind: none" in result.output
