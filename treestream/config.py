"""
Treestream configuration — all environment variables in one place.

Read from environment at import. Components take explicit constructor
arguments and fall back to these values.
"""

from __future__ import annotations

import os


class Settings:
    """Application settings from environment variables."""

    # Generation service endpoints
    GENERATE_URL: str = os.environ.get("TREESTREAM_GENERATE_URL", "http://localhost:8000/api/generate")
    ENSEMBLE_URL: str = os.environ.get("TREESTREAM_ENSEMBLE_URL", "http://localhost:8000/api/ensemble")

    # Seconds without a chunk before the transport gives up; generation can think for a while
    TIMEOUT_SECONDS: float = float(os.environ.get("TREESTREAM_TIMEOUT_SECONDS", "120"))

    # Ensemble
    ENSEMBLE_SOURCES: str = os.environ.get("TREESTREAM_ENSEMBLE_SOURCES", "A,B,C")
    EVALUATOR_VARIANT: str = os.environ.get("TREESTREAM_EVALUATOR_VARIANT", "mergeSimple")

    # Replay service
    MOCK_PROFILE: str = os.environ.get("TREESTREAM_MOCK_PROFILE", "instant")

    # Logging
    LOG_LEVEL: str = os.environ.get("TREESTREAM_LOG_LEVEL", "INFO")

    @property
    def ensemble_source_tags(self) -> list[str]:
        return [tag.strip() for tag in self.ENSEMBLE_SOURCES.split(",") if tag.strip()]


# Singleton instance
settings = Settings()
