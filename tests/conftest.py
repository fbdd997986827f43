"""Shared fixtures."""

import tempfile

import pytest

from tagorm.schema.registry import MetadataRegistry
from tests.fakes import RecordingDialect


@pytest.fixture
def registry():
    """Fresh, isolated metadata registry."""
    return MetadataRegistry()


@pytest.fixture
def dialect():
    """Recording dialect with ``?`` placeholders."""
    return RecordingDialect()


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir
