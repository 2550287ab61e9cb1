import asyncio
import sys
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest


def _ensure_project_root_on_path() -> None:
    this_file = Path(__file__).resolve()
    project_root = this_file.parent.parent
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))


_ensure_project_root_on_path()

from config.settings import EngineSettings  # noqa: E402
from core.node_registry import Registry, build_default_registry  # noqa: E402
from core.types_registry import ExecutionContext  # noqa: E402


@pytest.fixture(autouse=True)
def test_env_isolation():
    """Keep a developer's .env file out of the settings seen by tests."""
    with patch("config.settings.load_dotenv", return_value=False):
        yield


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    return EngineSettings(default_shell="sh", temp_dir=str(tmp_path))


@pytest.fixture
def registry(settings) -> Registry:
    """A fresh registry per test; nothing is shared between test instances."""
    return build_default_registry(settings)


@pytest.fixture
def make_context():
    def _make(
        inputs: dict[str, Any] | None = None,
        parameters: dict[str, Any] | None = None,
        *,
        node_id: str = "test-node",
        signal: asyncio.Event | None = None,
        metadata: dict[str, Any] | None = None,
        events: list | None = None,
    ) -> ExecutionContext:
        return ExecutionContext(
            node_id=node_id,
            inputs=inputs or {},
            parameters=parameters if parameters is not None else {},
            signal=signal,
            metadata=metadata or {},
            report_progress=events.append if events is not None else None,
        )

    return _make
