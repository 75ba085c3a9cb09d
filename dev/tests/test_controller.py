from __future__ import annotations

from pathlib import Path
from typing import List, Tuple

import pytest

from vsdbg_patcher import (
    ORIGINAL_BYTES,
    PATCHED_BYTES,
    PatchController,
    PatchState,
    Severity,
    backup_path,
)

pytestmark = pytest.mark.integration


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: List[Tuple[Severity, str]] = []

    def __call__(self, severity: Severity, message: str) -> None:
        self.calls.append((severity, message))


def make_controller(root, platform: str = "linux", notifier=None) -> PatchController:
    return PatchController(extension_root=root, platform=platform, notifier=notifier)


def test_patch_scenario(extension_root: Path, library: Path) -> None:
    before = library.read_bytes()

    outcome = make_controller(extension_root).patch()

    assert outcome.success
    assert outcome.offset == 16
    assert "0x10" in outcome.message
    after = library.read_bytes()
    assert after == b"\x00" * 16 + PATCHED_BYTES + b"\xff" * 4
    assert len(after) == len(before)
    assert backup_path(library).read_bytes() == before


def test_patch_is_idempotent(extension_root: Path, library: Path) -> None:
    controller = make_controller(extension_root)
    controller.patch()
    patched = library.read_bytes()
    mtime = library.stat().st_mtime_ns

    outcome = controller.patch()

    assert outcome.success
    assert outcome.offset is None
    assert "already patched" in outcome.message
    assert library.read_bytes() == patched
    assert library.stat().st_mtime_ns == mtime


def test_patch_twice_keeps_pristine_backup(extension_root: Path, library: Path) -> None:
    before = library.read_bytes()
    controller = make_controller(extension_root)

    controller.patch()
    controller.patch()

    backups = sorted(p.name for p in library.parent.iterdir() if p.suffix == ".bak")
    assert backups == ["libvsdbg.so.bak"]
    assert backup_path(library).read_bytes() == before


def test_patch_then_restore_round_trip(extension_root: Path, library: Path) -> None:
    before = library.read_bytes()
    controller = make_controller(extension_root)

    assert controller.patch().success
    outcome = controller.restore()

    assert outcome.success
    assert "restored" in outcome.message
    assert library.read_bytes() == before
    assert controller.status().state == PatchState.ORIGINAL


def test_restore_on_original_is_harmless(extension_root: Path, library: Path) -> None:
    controller = make_controller(extension_root)
    controller.patch()
    controller.restore()

    outcome = controller.restore()

    assert outcome.success
    assert controller.status().state == PatchState.ORIGINAL


def test_patch_unknown_fails_without_writing(extension_root: Path, library: Path) -> None:
    library.write_bytes(b"\x01" * 64)

    outcome = make_controller(extension_root).patch()

    assert not outcome.success
    assert outcome.severity == Severity.ERROR
    assert "pattern not found" in outcome.message
    assert library.read_bytes() == b"\x01" * 64


def test_restore_unknown_with_backup(extension_root: Path, library: Path) -> None:
    before = library.read_bytes()
    controller = make_controller(extension_root)
    controller.patch()
    library.write_bytes(b"\x02" * 64)
    assert controller.status().state == PatchState.UNKNOWN

    assert controller.restore().success
    assert library.read_bytes() == before


def test_restore_without_backup(extension_root: Path, library: Path) -> None:
    library.write_bytes(b"\x02" * 64)

    outcome = make_controller(extension_root).restore()

    assert not outcome.success
    assert "No backup file found" in outcome.message
    assert library.read_bytes() == b"\x02" * 64


def test_not_found(tmp_path: Path) -> None:
    root = tmp_path / "missing"
    controller = make_controller(root)

    report = controller.status()
    assert not report.found
    assert "not found" in report.message

    outcome = controller.patch()
    assert not outcome.success
    assert "Could not find libvsdbg.so" in outcome.message

    assert not controller.restore().success
    assert not root.exists()
    assert list(tmp_path.iterdir()) == []


def test_unsupported_platform_touches_nothing(extension_root: Path, library: Path) -> None:
    before = library.read_bytes()
    notifier = RecordingNotifier()
    controller = make_controller(extension_root, platform="win32", notifier=notifier)

    for outcome in (controller.patch(), controller.restore()):
        assert not outcome.success
        assert "only works on Linux" in outcome.message
    assert "only works on Linux" in controller.status().message
    assert controller.auto_check() is None

    assert library.read_bytes() == before
    assert not backup_path(library).exists()
    assert notifier.calls == []


def test_status_reports_state(extension_root: Path, library: Path) -> None:
    controller = make_controller(extension_root)

    report = controller.status()
    assert report.found
    assert report.path == str(library.resolve())
    assert not report.backup_exists
    assert report.state == PatchState.ORIGINAL
    assert "Status: ORIGINAL" in report.message
    assert ORIGINAL_BYTES.hex().upper() in report.message

    controller.patch()
    report = controller.status()
    assert report.backup_exists
    assert report.state == PatchState.PATCHED
    assert "Backup exists: Yes" in report.message
    assert "Status: PATCHED" in report.message

    library.write_bytes(b"")
    assert "UNKNOWN" in controller.status().message


def test_status_read_failure_is_reported(
    extension_root: Path, library: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def boom(self):
        raise PermissionError("denied")

    monkeypatch.setattr(Path, "read_bytes", boom)

    report = make_controller(extension_root).status()

    assert report.found
    assert report.error is not None
    assert "Failed to check status: denied" in report.message


def test_patch_write_failure_becomes_outcome(
    extension_root: Path, library: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def boom(self, data):
        raise OSError("read-only file system")

    monkeypatch.setattr(Path, "write_bytes", boom)

    outcome = make_controller(extension_root).patch()

    assert not outcome.success
    assert outcome.message == "Patch failed: read-only file system"
    assert library.read_bytes() == b"\x00" * 16 + ORIGINAL_BYTES + b"\xff" * 4
    assert backup_path(library).exists()


def test_auto_check_patches_original(extension_root: Path, library: Path) -> None:
    notifier = RecordingNotifier()

    outcome = make_controller(extension_root, notifier=notifier).auto_check()

    assert outcome is not None and outcome.success
    assert library.read_bytes()[16:29] == PATCHED_BYTES
    assert notifier.calls == [
        (Severity.INFO, "Automatically patched libvsdbg.so for code-oss compatibility")
    ]


def test_auto_check_skips_patched(extension_root: Path, library: Path) -> None:
    notifier = RecordingNotifier()
    controller = make_controller(extension_root, notifier=notifier)
    controller.patch()

    assert controller.auto_check() is None
    assert notifier.calls == []


def test_auto_check_leaves_unknown_alone(extension_root: Path, library: Path) -> None:
    library.write_bytes(b"\x03" * 32)
    notifier = RecordingNotifier()

    assert make_controller(extension_root, notifier=notifier).auto_check() is None

    assert library.read_bytes() == b"\x03" * 32
    assert not backup_path(library).exists()
    assert notifier.calls == []


def test_auto_check_silent_when_not_installed(tmp_path: Path) -> None:
    notifier = RecordingNotifier()
    assert make_controller(tmp_path, notifier=notifier).auto_check() is None
    assert notifier.calls == []


def test_auto_check_failure_is_a_warning(
    extension_root: Path, library: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def boom(self, data):
        raise OSError("disk full")

    monkeypatch.setattr(Path, "write_bytes", boom)
    notifier = RecordingNotifier()

    outcome = make_controller(extension_root, notifier=notifier).auto_check()

    assert outcome is not None and not outcome.success
    assert notifier.calls == [
        (Severity.WARNING, "Auto-patch failed - Patch failed: disk full")
    ]


def test_auto_check_never_raises(extension_root: Path) -> None:
    def broken_notifier(severity: Severity, message: str) -> None:
        raise RuntimeError("no display")

    controller = make_controller(extension_root, notifier=broken_notifier)

    assert controller.auto_check() is None
