"""Shared test fixtures for artifacting testing."""

import json
import pytest
import tempfile
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Optional
import sys
import os

# Add parent directory to path so we can import artifacting
sys.path.insert(0, str(Path(__file__).parent.parent))

import artifacting

PNG_HEADER = b"\x89PNG\r\n\x1a\n"


class FakeExtractor(artifacting.TextExtractor):
    """Deterministic extractor: the "text" is whatever follows the PNG header."""

    def __init__(self) -> None:
        self.calls = 0

    def extract(self, image_bytes: bytes) -> Optional[str]:
        self.calls += 1
        return image_bytes.replace(PNG_HEADER, b"").decode("utf-8", errors="ignore")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def vault_dir(temp_dir: Path) -> Path:
    """A vault with an empty screenshot inbox."""
    vault = temp_dir / "vault"
    (vault / "Inbox" / "Screenshots").mkdir(parents=True)
    return vault


@pytest.fixture
def inbox(vault_dir: Path) -> Path:
    return vault_dir / "Inbox" / "Screenshots"


@pytest.fixture
def no_config(temp_dir: Path) -> str:
    """Path of a config file that does not exist, so defaults apply."""
    return str(temp_dir / "missing_config.yaml")


@pytest.fixture
def make_image() -> Callable[..., Path]:
    """Write a fake PNG whose extractable text is ``text``."""
    def _make(folder: Path, name: str, text: str = "") -> Path:
        path = folder / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(PNG_HEADER + text.encode("utf-8"))
        return path

    return _make


@pytest.fixture
def ticking_clock() -> Callable[[], datetime]:
    """Clock that advances one second per call."""
    current = [datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)]

    def _tick() -> datetime:
        current[0] = current[0] + timedelta(seconds=1)
        return current[0]

    return _tick


@pytest.fixture
def sample_loom_data() -> Dict[str, Any]:
    """Loom data with two documents, including malformed entries."""
    return {
        "settings": {"model": "whatever"},
        "state": {
            "Stories/first.md": {
                "current": "n1",
                "nodes": {
                    "n1": {"text": "Once upon a foobar", "parentId": None},
                    "n2": {"text": "nofoo here", "parentId": "n1", "bookmarked": True},
                    "n3": {"parentId": "n1"},
                    "n4": {"text": 42, "parentId": "n1"},
                },
            },
            "Stories/second.md": {
                "nodes": {
                    "m1": {"text": "baz"},
                    "m2": {"text": "dangling child", "parentId": "missing-node"},
                },
            },
        },
    }


@pytest.fixture
def write_loom_data(vault_dir: Path) -> Callable[[Any], Path]:
    """Write loom data (dict or raw string) to the default loom data path."""
    def _write(data: Any) -> Path:
        path = vault_dir / artifacting.DEFAULT_LOOM_DATA_PATH
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, str):
            path.write_text(data, encoding="utf-8")
        else:
            path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def fake_extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def app(vault_dir: Path, no_config: str, fake_extractor: FakeExtractor, ticking_clock) -> artifacting.Artifacting:
    """An Artifacting instance over the test vault with a fake extractor."""
    instance = artifacting.Artifacting(
        vault_dir=str(vault_dir),
        config_path=no_config,
        quiet=True,
        extractor=fake_extractor,
    )
    instance.ingester.clock = ticking_clock
    return instance


@pytest.fixture
def list_notes(vault_dir: Path) -> Callable[[], list]:
    """Names of the companion notes in the default note folder."""
    def _list() -> list:
        note_dir = vault_dir / artifacting.DEFAULT_NOTE_FOLDER
        if not note_dir.exists():
            return []
        return sorted(p.name for p in note_dir.iterdir())

    return _list


# Environment setup for testing
os.environ.setdefault("ARTIFACTING_TEST_MODE", "true")
