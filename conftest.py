import os
import shutil
from pathlib import Path

import pytest

TEST_DATA_DIR = Path("data-tests")

# cyoa_engine.app builds its default app at import time; keep it off ./data
os.environ["CYOA_DATA_DIR"] = str(TEST_DATA_DIR.resolve())
for var in ("CYOA_PROVIDER_URL", "CYOA_API_KEY", "CYOA_IMAGE_URL"):
    os.environ[var] = ""


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    TEST_DATA_DIR.mkdir()
    yield
    # leave data-tests around after tests for inspection; CI can ignore it
