"""Shared test fixtures: a fresh pipeline per test and a TestClient bound to it."""
import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import app
from app.modules.pipeline import build_pipeline
from app.modules.pipeline_config import PipelineConfig


@pytest.fixture
def test_settings():
    return Settings(
        WORKER_COUNT=2,
        ALERT_HISTORY_SIZE=1000,
        METRICS_INTERVAL_SECONDS=3600,
        CLUSTER_INTERVAL_SECONDS=3600,
        CORRELATION_PRUNE_SECONDS=3600,
        TIDEWATCH_API_KEY=None,
    )


@pytest.fixture
def pipeline(test_settings):
    """Fully wired pipeline with built-in default config (not started)."""
    return build_pipeline(test_settings, PipelineConfig())


@pytest.fixture
def api_client(pipeline):
    """TestClient whose lifespan starts (and finally stops) the ``pipeline`` fixture."""
    app.state.pipeline = pipeline
    with TestClient(app) as client:
        yield client
    app.state.pipeline = None
