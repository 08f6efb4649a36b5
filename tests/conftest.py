"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from vault.store import RecordStore  # noqa: E402


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for the record store during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def store(tmp_data_dir: Path) -> RecordStore:
    return RecordStore(str(tmp_data_dir))


@pytest.fixture(scope="function", autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "MYAI_CONFIG" or var.startswith("MYAI__"):
            monkeypatch.delenv(var, raising=False)
    yield


class StubGenerator:
    """Text generator double: returns canned replies or raises."""

    def __init__(self, reply: str = "ok", fail: Optional[Exception] = None) -> None:
        self.reply = reply
        self.fail = fail
        self.calls: List[Dict[str, object]] = []

    def complete(self, turns: Sequence[Dict[str, str]], *, system: Optional[str] = None) -> str:
        self.calls.append({"turns": list(turns), "system": system})
        if self.fail is not None:
            raise self.fail
        return self.reply


@pytest.fixture
def stub_generator_cls():
    return StubGenerator
