import struct

import pytest

from clipkeep.config import RegistryConfig
from clipkeep.models import ClipboardEntry
from clipkeep.storage import Registry


@pytest.fixture
def config(tmp_path):
    return RegistryConfig(
        cache_dir=tmp_path / "cache",
        app_id="clipkeep-test",
        history_size=5,
        cache_file_size_mib=1,
    )


@pytest.fixture
def registry(config):
    return Registry(config)


@pytest.fixture
def make_entry():
    """Factory fixture to create ClipboardEntry instances for testing."""

    def _make_entry(
        contents: str | bytes = "hello world",
        mimetype: str = "text/plain",
        favorite: bool = False,
    ) -> ClipboardEntry:
        return ClipboardEntry.create(mimetype, contents, favorite)

    return _make_entry


@pytest.fixture
def png_bytes():
    """PNG signature and IHDR header for a 120x80 image, enough for dimension parsing."""
    header = b"\x89PNG\r\n\x1a\n"
    ihdr_type = b"\x00\x00\x00\rIHDR"
    return header + ihdr_type + struct.pack(">I", 120) + struct.pack(">I", 80) + b"\x00" * 32
