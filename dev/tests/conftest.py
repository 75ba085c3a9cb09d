from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure repo root on path
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vsdbg_patcher import ORIGINAL_BYTES  # noqa: E402

SAMPLE = b"\x00" * 16 + ORIGINAL_BYTES + b"\xff" * 4


def _make_extension(root: Path, content: bytes = SAMPLE) -> Path:
    """Create a fake extension install and return the library path."""
    debugger = root / ".debugger"
    debugger.mkdir(parents=True, exist_ok=True)
    lib = debugger / "libvsdbg.so"
    lib.write_bytes(content)
    return lib


@pytest.fixture
def extension_root(tmp_path: Path) -> Path:
    root = tmp_path / "ms-dotnettools.csharp-2.0.0-linux-x64"
    _make_extension(root)
    return root


@pytest.fixture
def library(extension_root: Path) -> Path:
    return extension_root / ".debugger" / "libvsdbg.so"


@pytest.fixture
def make_extension():
    return _make_extension
