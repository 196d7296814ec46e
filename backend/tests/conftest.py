"""Shared fixtures: an in-memory pipeline with a fake dataset loader."""

from __future__ import annotations

import pathlib
from collections.abc import Iterator
from typing import Any

import pytest
from fastapi import testclient

from geocatalog import main
from geocatalog.api import imports
from geocatalog.core import config
from geocatalog.db import database
from geocatalog.db import models as db_models
from geocatalog.services import pipeline as pipeline_service
from geocatalog.services import predicates


class FakeLoader:
    """Serves prepared outcomes per file name instead of running ogr2ogr.

    A list value is consumed in order; its last element repeats.
    """

    def __init__(self) -> None:
        self.datasets: dict[str, Any] = {}
        self.calls: list[str] = []

    def __call__(
        self,
        path: pathlib.Path,
        settings: config.Settings,
    ) -> db_models.CandidateSet:
        self.calls.append(path.name)
        dataset = self.datasets[path.name]
        if isinstance(dataset, list):
            dataset = dataset.pop(0) if len(dataset) > 1 else dataset[0]
        if isinstance(dataset, Exception):
            raise dataset
        return dataset


@pytest.fixture
def loader() -> FakeLoader:
    return FakeLoader()


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> config.Settings:
    return config.Settings(
        storage_dir=tmp_path / "uploads",
        work_dir=tmp_path / "work",
        provider_retry_wait_seconds=0,
        queue_limit=5,
    )


@pytest.fixture
def pipeline(
    settings: config.Settings,
    loader: FakeLoader,
) -> pipeline_service.ClassificationPipeline:
    repo = database.InMemoryCorpusRepository(
        buffer_radius=settings.buffer_radius
    )
    return pipeline_service.ClassificationPipeline(
        repository=repo,
        provider=predicates.ShapelyPredicateProvider(repo, settings),
        settings=settings,
        loader=loader,
    )


@pytest.fixture
def client(
    settings: config.Settings,
    pipeline: pipeline_service.ClassificationPipeline,
) -> Iterator[testclient.TestClient]:
    """API client bound to the test pipeline and settings."""
    app = main.create_app()
    app.dependency_overrides[imports._get_pipeline] = lambda: pipeline
    app.dependency_overrides[config.get_settings] = lambda: settings
    imports._upload_cache.clear()
    try:
        yield testclient.TestClient(app)
    finally:
        app.dependency_overrides.clear()
        imports._upload_cache.clear()
