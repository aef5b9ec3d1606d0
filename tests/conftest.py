from dataclasses import replace

import pytest

from admission import AdmissionController
from artifacts import ArtifactStore
from fakes import SUCCESS_SCRIPT, python_command
from jobs import JobManager
from settings import Settings


@pytest.fixture
def settings(tmp_path):
    return Settings(
        max_concurrent=2,
        job_timeout=20.0,
        artifact_retention=60.0,
        artifact_max_age=3600.0,
        metadata_retry_attempts=2,
        metadata_retry_delay=0.0,
        metadata_timeout=5.0,
        keepalive_interval=5.0,
        download_dir=str(tmp_path / "downloads"),
    )


@pytest.fixture
def make_manager(settings):
    def factory(script=SUCCESS_SCRIPT, command_builder=None, **overrides):
        effective = replace(settings, **overrides)
        return JobManager(
            effective,
            AdmissionController(effective.max_concurrent),
            ArtifactStore(effective.download_dir),
            command_builder=command_builder or python_command(script),
        )

    return factory
