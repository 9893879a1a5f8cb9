"""Periodic fleet clustering.

Runs on its own timer over a bounded buffer of recent telemetry, using the
latest point of each vessel. Two independent groupings:

  route_similarity   10° lat/lng grid cell with > 1 vessel.
                     risk high when > 5 members, else medium.
  behavior_pattern   speed band (slow < 5 kn, medium < 15 kn, fast) with
                     > 2 vessels. risk high for the slow band, else medium.

Every cycle replaces the previous cluster set; clusters carry no identity
across cycles beyond the bin-derived id.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone

import polars as pl

from app.models.base import ClusterKind, RiskLevel
from app.models.pattern import Cluster
from app.models.telemetry import GeoPoint, TelemetryPoint
from app.modules.pipeline_config import ClusteringConfig

logger = logging.getLogger(__name__)

_SCHEMA = {
    "vessel_id": pl.Utf8,
    "lat": pl.Float64,
    "lng": pl.Float64,
    "speed": pl.Float64,
    "timestamp": pl.Datetime(time_zone="UTC"),
}


class ClusterAnalyzer:
    def __init__(self, config: ClusteringConfig | None = None, buffer_size: int = 5000):
        self.config = config or ClusteringConfig()
        self._buffer: deque[TelemetryPoint] = deque(maxlen=buffer_size)
        self._clusters: list[Cluster] = []
        self._lock = threading.Lock()

    def observe(self, point: TelemetryPoint) -> None:
        with self._lock:
            self._buffer.append(point)

    @property
    def clusters(self) -> list[Cluster]:
        with self._lock:
            return list(self._clusters)

    def _latest_frame(self) -> pl.DataFrame:
        with self._lock:
            rows = [
                {
                    "vessel_id": p.vessel_id,
                    "lat": p.lat,
                    "lng": p.lng,
                    "speed": p.speed,
                    "timestamp": p.timestamp.astimezone(timezone.utc),
                }
                for p in self._buffer
            ]
        df = pl.DataFrame(rows, schema=_SCHEMA)
        if df.is_empty():
            return df
        return df.sort("timestamp").group_by("vessel_id", maintain_order=True).last()

    def run_cycle(self, now: datetime | None = None) -> list[Cluster]:
        """Recompute clusters from the buffer and replace the current set."""
        now = now or datetime.now(timezone.utc)
        df = self._latest_frame()
        clusters: list[Cluster] = []
        if not df.is_empty():
            clusters.extend(self._spatial(df, now))
            clusters.extend(self._behavioral(df, now))
        with self._lock:
            self._clusters = clusters
        logger.info("Cluster cycle: %d vessels, %d clusters", df.height, len(clusters))
        return clusters

    # ── Groupings ─────────────────────────────────────────────────────────────

    def _spatial(self, df: pl.DataFrame, now: datetime) -> list[Cluster]:
        grid = self.config.grid_degrees
        cells = (
            df.with_columns(
                (pl.col("lat") / grid).floor().cast(pl.Int64).alias("cell_lat"),
                (pl.col("lng") / grid).floor().cast(pl.Int64).alias("cell_lng"),
            )
            .group_by(["cell_lat", "cell_lng"])
            .agg(
                pl.col("vessel_id").sort().alias("vessel_ids"),
                pl.col("lat").mean().alias("centroid_lat"),
                pl.col("lng").mean().alias("centroid_lng"),
                pl.col("speed").mean().alias("avg_speed"),
                pl.len().alias("members"),
            )
            .filter(pl.col("members") >= self.config.spatial_min_members)
            .sort(["cell_lat", "cell_lng"])
        )

        result = []
        for row in cells.iter_rows(named=True):
            members = row["members"]
            result.append(Cluster(
                id=f"route_{row['cell_lat']}_{row['cell_lng']}",
                vessel_ids=list(row["vessel_ids"]),
                cluster_kind=ClusterKind.ROUTE_SIMILARITY,
                characteristics=[
                    f"{members} vessels in {grid:g}° cell",
                    f"average speed {row['avg_speed']:.1f} kn",
                ],
                risk_level=RiskLevel.HIGH if members >= self.config.spatial_high_risk_members else RiskLevel.MEDIUM,
                centroid=GeoPoint(lat=row["centroid_lat"], lng=row["centroid_lng"]),
                generated_at=now,
            ))
        return result

    def _behavioral(self, df: pl.DataFrame, now: datetime) -> list[Cluster]:
        bands = (
            df.with_columns(
                pl.when(pl.col("speed") < self.config.slow_below_kn).then(pl.lit("slow"))
                .when(pl.col("speed") < self.config.medium_below_kn).then(pl.lit("medium"))
                .otherwise(pl.lit("fast"))
                .alias("band")
            )
            .group_by("band")
            .agg(
                pl.col("vessel_id").sort().alias("vessel_ids"),
                pl.col("lat").mean().alias("centroid_lat"),
                pl.col("lng").mean().alias("centroid_lng"),
                pl.col("speed").mean().alias("avg_speed"),
                pl.len().alias("members"),
            )
            .filter(pl.col("members") >= self.config.behavior_min_members)
            .sort("band")
        )

        result = []
        for row in bands.iter_rows(named=True):
            band = row["band"]
            result.append(Cluster(
                id=f"behavior_{band}",
                vessel_ids=list(row["vessel_ids"]),
                cluster_kind=ClusterKind.BEHAVIOR_PATTERN,
                characteristics=[
                    f"{band} speed band",
                    f"{row['members']} vessels",
                    f"average speed {row['avg_speed']:.1f} kn",
                ],
                risk_level=RiskLevel.HIGH if band == "slow" else RiskLevel.MEDIUM,
                centroid=GeoPoint(lat=row["centroid_lat"], lng=row["centroid_lng"]),
                generated_at=now,
            ))
        return result
