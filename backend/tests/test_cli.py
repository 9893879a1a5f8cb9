"""Tests for the tidewatch CLI (typer CliRunner)."""
import json
from pathlib import Path

import polars as pl
from typer.testing import CliRunner

from app.cli import app

from factories import make_track

runner = CliRunner()
REPO_CONFIG = Path(__file__).resolve().parents[2] / "config" / "pipeline.yaml"


def test_rules_lists_configured_rules():
    result = runner.invoke(app, ["rules", "--config", str(REPO_CONFIG)])
    assert result.exit_code == 0
    assert "high-anomaly-critical" in result.output


def test_check_config_ok():
    result = runner.invoke(app, ["check-config", "--config", str(REPO_CONFIG)])
    assert result.exit_code == 0
    assert "Configuration OK" in result.output


def test_check_config_invalid(tmp_path):
    path = tmp_path / "pipeline.yaml"
    path.write_text("detection:\n  speed:\n    trigger_deviation: fast\n")
    result = runner.invoke(app, ["check-config", "--config", str(path)])
    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def _write_csv(path):
    rows = []
    for p in make_track(6, vessel_id="T-1", vessel_type="tanker", speed=40.0):
        rows.append({
            "vessel_id": p.vessel_id, "timestamp": p.timestamp.isoformat(), "lat": p.lat, "lng": p.lng,
            "speed": p.speed, "course": p.course, "vessel_type": p.vessel_type,
        })
    rows.append({**rows[0], "lat": 999.0})
    pl.DataFrame(rows).write_csv(path)


def test_replay_csv_with_export(tmp_path):
    data = tmp_path / "telemetry.csv"
    export = tmp_path / "export.json"
    _write_csv(data)

    result = runner.invoke(app, ["replay", str(data), "--config", str(REPO_CONFIG), "--export", str(export)])
    assert result.exit_code == 0, result.output
    assert "Processed" in result.output
    assert "1 rejected" in result.output
    exported = json.loads(export.read_text())
    assert exported["metrics"]["processed_count"] == 6
    assert exported["summary"]["by_severity"]["critical"] >= 1


def test_replay_jsonl(tmp_path):
    data = tmp_path / "telemetry.jsonl"
    data.write_text("\n".join(json.dumps(p.model_dump(mode="json")) for p in make_track(3)))
    result = runner.invoke(app, ["replay", str(data), "--config", str(REPO_CONFIG)])
    assert result.exit_code == 0, result.output


def test_replay_empty_file(tmp_path):
    data = tmp_path / "empty.jsonl"
    data.write_text("")
    result = runner.invoke(app, ["replay", str(data)])
    assert result.exit_code == 1
