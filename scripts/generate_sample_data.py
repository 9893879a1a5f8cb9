#!/usr/bin/env python3
"""Generate sample telemetry for 8 test vessels as a replayable CSV.

Creates ~150 position reports with distinct anomaly profiles:
  A  26h gap vessel        : AIS gap > 24h (critical), ghost-vessel rule
  B  Speeding tanker       : 40 kn against 12 kn expected (critical speed)
  C  Rendezvous vessel     : loiters and drifts alongside vessel D
  D  Rendezvous partner    : same spot as C, under 3 kn
  E  Identity switcher     : name/IMO change halfway through the track
  F  Clean vessel          : steady transit, should raise nothing
  G  Zig-zag vessel        : repeated >90° course reversals
  H  Restricted-zone entry : transits into the Gulf of Finland zone

Replay it with:  tidewatch replay sample_telemetry.csv
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from pathlib import Path

import polars as pl
import typer

cli = typer.Typer(help="Generate sample telemetry for Tidewatch development/testing.")

# ---------------------------------------------------------------------------
# Reference timestamp: all positions are relative to this date.
# ---------------------------------------------------------------------------
BASE_TIME = datetime(2026, 2, 1, 6, 0, 0, tzinfo=timezone.utc)


def _row(vessel_id: str, t: datetime, lat: float, lng: float, speed: float, course: float,
         vessel_type: str, **extra) -> dict:
    return {
        "vessel_id": vessel_id,
        "timestamp": t.isoformat(),
        "lat": round(lat, 6),
        "lng": round(lng, 6),
        "speed": speed,
        "course": course % 360,
        "vessel_type": vessel_type,
        "signal_strength": extra.get("signal_strength", 0.95),
        "source_feed": "sample_gen",
        "vessel_name": extra.get("vessel_name"),
        "imo": extra.get("imo"),
        "callsign": extra.get("callsign"),
    }


def _points_vessel_a() -> list[dict]:
    """26h gap vessel. 8 points, 26h silence, then 10 more. Med transit near Crete."""
    rows = []
    for i in range(8):
        rows.append(_row("538001001", BASE_TIME + timedelta(minutes=30 * i),
                         34.80 - 0.05 * i, 24.00 + 0.08 * i, 13.5, 160 + 2 * i, "tanker"))
    resume = BASE_TIME + timedelta(hours=3.5 + 26)
    for i in range(10):
        rows.append(_row("538001001", resume + timedelta(minutes=30 * i),
                         33.20 - 0.04 * i, 26.50 + 0.06 * i, 12.5 + (i % 3) * 0.5, 145, "tanker"))
    return rows


def _points_vessel_b() -> list[dict]:
    """Speeding tanker. Normal for 10 points, then 40 kn."""
    rows = []
    for i in range(16):
        speed = 12.0 if i < 10 else 40.0
        rows.append(_row("538002002", BASE_TIME + timedelta(minutes=20 * i),
                         36.00 + 0.03 * i, 15.00 + 0.05 * i, speed, 45, "tanker"))
    return rows


def _points_rendezvous(vessel_id: str, offset_lat: float, vessel_type: str) -> list[dict]:
    """Loiter at ~36.52 N, 22.70 E for 10h at under 1 kn."""
    rows = []
    for i in range(21):
        angle = math.radians(i * 17)
        rows.append(_row(vessel_id, BASE_TIME + timedelta(minutes=30 * i),
                         36.520 + offset_lat + 0.002 * math.sin(angle), 22.700 + 0.002 * math.cos(angle),
                         0.4 + 0.05 * (i % 4), (i * 17) % 360, vessel_type))
    return rows


def _points_vessel_e() -> list[dict]:
    """Identity switcher. Bosporus approach; declared name and IMO change at point 10."""
    rows = []
    for i in range(18):
        ident = (
            {"vessel_name": "SEA HARMONY", "imo": "9300005", "callsign": "9HAB5"}
            if i < 10 else
            {"vessel_name": "NORTHERN LIGHT", "imo": "9411223", "callsign": "9HAB5"}
        )
        rows.append(_row("538005005", BASE_TIME + timedelta(minutes=25 * i),
                         41.10 - 0.02 * i, 29.00 + 0.01 * i, 11.0 + (i % 3), 200 + i, "cargo", **ident))
    return rows


def _points_vessel_f() -> list[dict]:
    """Clean vessel. Rotterdam approach, 12-14 kn, steady course."""
    return [
        _row("244006006", BASE_TIME + timedelta(minutes=30 * i),
             51.90 + 0.008 * i, 3.90 + 0.012 * i, 12.0 + (i % 3), 340 + (i % 5) * 2, "cargo",
             vessel_name="NORDIC TRADER", imo="9500006")
        for i in range(20)
    ]


def _points_vessel_g() -> list[dict]:
    """Zig-zag vessel. Course flips by ~150° every 20 minutes."""
    return [
        _row("538007007", BASE_TIME + timedelta(minutes=20 * i),
             44.60 - 0.01 * i, 37.80 + 0.015 * i, 9.0, 60 if i % 2 == 0 else 210, "fishing")
        for i in range(15)
    ]


def _points_vessel_h() -> list[dict]:
    """Restricted-zone entry. Baltic transit ending inside the Gulf of Finland zone."""
    return [
        _row("273008008", BASE_TIME + timedelta(minutes=30 * i),
             59.20 + 0.08 * i, 27.00 + 0.25 * i, 13.0, 60, "cargo")
        for i in range(14)
    ]


POINT_GENERATORS = {
    "A": _points_vessel_a,
    "B": _points_vessel_b,
    "C": lambda: _points_rendezvous("538003003", 0.0, "tanker"),
    "D": lambda: _points_rendezvous("538004004", -0.001, "tanker"),
    "E": _points_vessel_e,
    "F": _points_vessel_f,
    "G": _points_vessel_g,
    "H": _points_vessel_h,
}


def build_sample_frame() -> pl.DataFrame:
    rows = [row for generator in POINT_GENERATORS.values() for row in generator()]
    return pl.DataFrame(rows).sort("timestamp")


# ---------------------------------------------------------------------------
# Main CLI command
# ---------------------------------------------------------------------------

@cli.command()
def generate(
    output: Path = typer.Option(Path("sample_telemetry.csv"), "--output", "-o", help="CSV file to write."),
) -> None:
    """Generate sample telemetry and write it as CSV."""
    df = build_sample_frame()
    df.write_csv(output)
    for label, generator in POINT_GENERATORS.items():
        rows = generator()
        typer.echo(f"  Vessel {label}: {rows[0]['vessel_id']}: {len(rows)} points")
    typer.echo(f"\nWrote {df.height} points across {len(POINT_GENERATORS)} vessels to {output}.")


if __name__ == "__main__":
    cli()
