from __future__ import annotations

import builtins
import os
from pathlib import Path
import sys
import tempfile

from _pytest.monkeypatch import MonkeyPatch
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ALLOWED_ARTIFACTS_ROOT = PROJECT_ROOT / "artifacts" / "test"
PYCACHE_PREFIX = ALLOWED_ARTIFACTS_ROOT / "pycache"
PYCACHE_PREFIX.mkdir(parents=True, exist_ok=True)
sys.dont_write_bytecode = True
sys.pycache_prefix = str(PYCACHE_PREFIX)
os.environ.setdefault("PYTHONDONTWRITEBYTECODE", "1")
os.environ.setdefault("PYTHONPYCACHEPREFIX", str(PYCACHE_PREFIX))
os.environ.setdefault("COVERAGE_FILE", str(ALLOWED_ARTIFACTS_ROOT / ".coverage"))
EXEMPT_PATH_SEGMENTS = {
    ".venv",
    ".pytest_cache",
    ".hypothesis",
    "site-packages",
    "__pycache__",
}

from ephemeral_agent.utilities.logger_manager import (  # noqa: E402
    LoggerConfig,
    LoggerManager,
)


def _assert_within_allowed(path: Path) -> None:
    resolved = path.resolve()
    if resolved == ALLOWED_ARTIFACTS_ROOT or ALLOWED_ARTIFACTS_ROOT in resolved.parents:
        return
    if any(segment in resolved.parts for segment in EXEMPT_PATH_SEGMENTS):
        return
    raise RuntimeError(
        "Writes, temporary files, and artifacts must stay under 'artifacts/test/'"
    )


@pytest.fixture(scope="session", autouse=True)
def enforce_artifact_boundary():
    ALLOWED_ARTIFACTS_ROOT.mkdir(parents=True, exist_ok=True)

    mp = MonkeyPatch()
    mp.setattr(tempfile, "gettempdir", lambda: str(ALLOWED_ARTIFACTS_ROOT))

    original_mkdir = Path.mkdir
    original_write_text = Path.write_text
    original_open_builtin = builtins.open

    def guarded_mkdir(self, *args, **kwargs):
        _assert_within_allowed(self)
        return original_mkdir(self, *args, **kwargs)

    def guarded_write_text(self, *args, **kwargs):
        _assert_within_allowed(self)
        return original_write_text(self, *args, **kwargs)

    def guarded_builtin_open(file, *args, **kwargs):
        mode = kwargs.get("mode", args[0] if args else "r")
        if isinstance(file, (str, Path, bytes)) and any(
            token in mode for token in ("w", "a", "x", "+")
        ):
            _assert_within_allowed(Path(os.fsdecode(file)))
        return original_open_builtin(file, *args, **kwargs)

    mp.setattr(Path, "mkdir", guarded_mkdir, raising=False)
    mp.setattr(Path, "write_text", guarded_write_text, raising=False)
    mp.setattr(builtins, "open", guarded_builtin_open, raising=False)

    yield

    mp.undo()


@pytest.fixture
def test_artifacts_dir(request) -> Path:
    safe_name = (
        request.node.nodeid.replace("::", "__").replace("/", "_").replace("\\", "_")
    )
    for char in "[]<>:\"|?* ":
        safe_name = safe_name.replace(char, "_")
    target = ALLOWED_ARTIFACTS_ROOT / safe_name
    if target.exists():
        for path in sorted(target.rglob("*"), reverse=True):
            if path.is_dir():
                path.rmdir()
            else:
                path.unlink()
    target.mkdir(parents=True, exist_ok=True)
    return target


@pytest.fixture
def tmp_path(test_artifacts_dir: Path) -> Path:
    return test_artifacts_dir


@pytest.fixture
def logger_manager(tmp_path: Path) -> LoggerManager:
    return LoggerManager(LoggerConfig(log_dir=tmp_path / "logs"))
