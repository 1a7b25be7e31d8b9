"""Configure test paths and shared fixtures."""
import sys
from pathlib import Path

import pytest

# Add src/ to path so tests can import the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from discourse_crawler.state_manager import CrawlStore  # noqa: E402


@pytest.fixture
def store(tmp_path):
    """A crawl store backed by a fresh SQLite file."""
    crawl_store = CrawlStore(str(tmp_path / "crawl.db"))
    yield crawl_store
    crawl_store.close()
