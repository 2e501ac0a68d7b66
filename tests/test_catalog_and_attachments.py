"""Tests for catalog loading and attachment checks that need no network."""

import json
from types import SimpleNamespace

import pytest

from attachments import AttachmentFetcher, is_config_attachment
from catalog import DEFAULT_CATALOG, FunctionState, load_catalog
from errors import AttachmentError


def test_catalog_file(tmp_path):
    path = tmp_path / "gamelist.json"
    path.write_text(
        json.dumps({"version": [0, 5, 0], "games": {"Clique": "playable", "Odd Game": "testing", "Old": 3}}),
        encoding="utf-8",
    )
    catalog = load_catalog(str(path))
    assert catalog.version == (0, 5, 0)
    assert catalog.state_of("Odd Game") == FunctionState.TESTING
    assert catalog.state_of("Old") == FunctionState.BROKEN
    assert not catalog.knows("Missing")


def test_catalog_fallback(tmp_path):
    assert load_catalog(str(tmp_path / "absent.json")) is DEFAULT_CATALOG


def test_config_attachment_extensions():
    assert is_config_attachment(SimpleNamespace(filename="Alice.YAML"))
    assert is_config_attachment(SimpleNamespace(filename="alice.yml"))
    assert not is_config_attachment(SimpleNamespace(filename="alice.png"))
    assert not is_config_attachment(SimpleNamespace(filename=None))


@pytest.mark.asyncio
async def test_oversized_attachment_is_refused_before_download():
    fetcher = AttachmentFetcher(max_bytes=10)
    with pytest.raises(AttachmentError, match="too large"):
        await fetcher.fetch_attachment(SimpleNamespace(url="https://cdn.example.invalid/a.yaml", size=11))
    with pytest.raises(AttachmentError, match="no URL"):
        await fetcher.fetch_text("")
