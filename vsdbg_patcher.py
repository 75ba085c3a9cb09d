import re
import sys
import shutil
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

LIBRARY_NAME = "libvsdbg.so"
DEBUGGER_DIR = ".debugger"
EXTENSION_ID = "ms-dotnettools.csharp"
BACKUP_SUFFIX = ".bak"
SUPPORTED_PLATFORM = "linux"

# Call site inside libvsdbg.so that rejects non-Microsoft editor builds
ORIGINAL_BYTES = bytes.fromhex("4889E7488D542430E86FBBE9FF")
PATCHED_BYTES = bytes.fromhex("BB01000000909090E97D000000")

assert len(ORIGINAL_BYTES) == len(PATCHED_BYTES)

DEFAULT_EXTENSIONS_DIRS = [
    "~/.vscode-oss/extensions",
    "~/.vscode/extensions",
]

PathLike = Union[str, Path]


class PatcherError(Exception):
    """Base class for all patcher errors"""


class NotFoundError(PatcherError):
    """The extension or the library is not installed"""


class PatternNotFoundError(PatcherError):
    """Neither the original nor the patched byte pattern is present"""


class NoBackupError(PatcherError):
    """Restore was requested but no backup exists on disk"""


class PatchState(Enum):
    ORIGINAL = "original"
    PATCHED = "patched"
    UNKNOWN = "unknown"


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Outcome(BaseModel):
    """Result of a patch or restore operation"""

    success: bool
    message: str
    offset: Optional[int] = None  # Only set when bytes were actually written

    @property
    def severity(self) -> Severity:
        return Severity.INFO if self.success else Severity.ERROR


class StatusReport(BaseModel):
    """Read-only snapshot of the library state"""

    found: bool
    path: Optional[str] = None
    backup_exists: bool = False
    state: Optional[PatchState] = None
    error: Optional[str] = None

    @property
    def message(self) -> str:
        """Human readable, multi-line rendering of the report."""
        if self.error:
            return self.error
        if not self.found:
            return f"C# extension not found or {LIBRARY_NAME} does not exist"

        lines = [
            f"{LIBRARY_NAME}: {self.path}",
            f"Backup exists: {'Yes' if self.backup_exists else 'No'}",
            f"Looking for original: {ORIGINAL_BYTES.hex().upper()}",
            f"Looking for patched: {PATCHED_BYTES.hex().upper()}",
        ]
        if self.state == PatchState.PATCHED:
            lines.append("Status: PATCHED")
        elif self.state == PatchState.ORIGINAL:
            lines.append("Status: ORIGINAL (not patched)")
        else:
            lines.append(
                "Status: UNKNOWN (neither original nor patched pattern found)"
            )
        return "\n".join(lines)


class Settings(BaseModel):
    """Represents saved settings"""

    extension_root: Optional[str] = None
    extensions_dirs: List[str] = Field(
        default_factory=lambda: list(DEFAULT_EXTENSIONS_DIRS)
    )
    auto_patch: bool = True


# ---------------------------------------------------------------------------
# Settings


def get_settings_path() -> Path:
    """Return the settings file location.

    Next to the executable when running as a compiled (PyInstaller) binary,
    otherwise in the current directory.
    """
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent / "settings.yml"
    return Path("settings.yml")


def load_settings(settings_file: Optional[Path] = None) -> Settings:
    """Load settings from a YAML file.

    Args:
        settings_file: File to read, defaults to :func:`get_settings_path`

    Returns:
        The parsed settings, or defaults when the file is missing, empty
        or invalid.
    """
    settings_file = settings_file or get_settings_path()
    if not settings_file.exists():
        return Settings()

    try:
        with open(settings_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not data:
            return Settings()
        return Settings(**data)
    except (yaml.YAMLError, ValidationError, TypeError) as e:
        logger.warning("Failed to load settings from %s: %s", settings_file, e)
    except (IOError, OSError) as e:
        logger.warning("Failed to read settings file %s: %s", settings_file, e)
    return Settings()


def save_settings(settings: Settings, settings_file: Optional[Path] = None) -> bool:
    """Write settings to a YAML file.

    Returns:
        True if the file was written, False otherwise
    """
    settings_file = settings_file or get_settings_path()
    try:
        with open(settings_file, "w", encoding="utf-8") as f:
            yaml.dump(
                settings.model_dump(exclude_none=True), f, default_flow_style=False
            )
        return True
    except (IOError, OSError, yaml.YAMLError) as e:
        logger.warning("Failed to save settings to %s: %s", settings_file, e)
        return False


# ---------------------------------------------------------------------------
# Locating the library


def locate(extension_root: Optional[PathLike]) -> Optional[Path]:
    """Return the absolute path of the debugger library under an extension root.

    Args:
        extension_root: Install directory of the C# extension, may be None

    Returns:
        Path to the library, or None if the root or the file does not exist
    """
    if not extension_root:
        return None
    candidate = Path(extension_root).expanduser() / DEBUGGER_DIR / LIBRARY_NAME
    try:
        if candidate.is_file():
            return candidate.resolve()
    except OSError:
        pass  # unreadable directory counts as not installed
    return None


def _version_key(directory: Path) -> List[int]:
    match = re.search(r"-(\d+(?:\.\d+)*)", directory.name[len(EXTENSION_ID) :])
    if not match:
        return []
    return [int(part) for part in match.group(1).split(".")]


def find_extension_root(
    extensions_dirs: Optional[Iterable[PathLike]] = None,
) -> Optional[Path]:
    """Find the newest installed C# extension that ships the debugger.

    Extension directories are searched in order and the first one holding
    a usable install wins.

    Args:
        extensions_dirs: Editor extension directories to scan

    Returns:
        The extension root, or None if nothing usable is installed
    """
    if extensions_dirs is None:
        extensions_dirs = DEFAULT_EXTENSIONS_DIRS

    for extensions_dir in extensions_dirs:
        base = Path(extensions_dir).expanduser()
        if not base.is_dir():
            continue
        candidates = [
            d
            for d in base.glob(f"{EXTENSION_ID}-*")
            if d.is_dir() and locate(d) is not None
        ]
        if candidates:
            return max(candidates, key=_version_key)
    return None


# ---------------------------------------------------------------------------
# Byte patterns


def find_pattern(buffer: bytes, pattern: bytes) -> Optional[int]:
    """Return the offset of the first occurrence of pattern, or None."""
    offset = buffer.find(pattern)
    return offset if offset != -1 else None


def classify(buffer: bytes) -> PatchState:
    """Classify the buffer by which known pattern it contains.

    A buffer that already holds the replacement counts as patched even if
    the original sequence shows up elsewhere.
    """
    if find_pattern(buffer, PATCHED_BYTES) is not None:
        return PatchState.PATCHED
    if find_pattern(buffer, ORIGINAL_BYTES) is not None:
        return PatchState.ORIGINAL
    return PatchState.UNKNOWN


def apply_patch(
    buffer: bytes, offset: int, pattern_len: int, replacement: bytes
) -> bytes:
    """Return a copy of buffer with pattern_len bytes at offset replaced.

    Args:
        buffer: Original file content
        offset: Start of the region to overwrite
        pattern_len: Size of the region to overwrite
        replacement: New bytes, must be exactly pattern_len long

    Returns:
        New buffer of the same length as the input

    Raises:
        ValueError: If the replacement size differs or the region is out of bounds
    """
    if len(replacement) != pattern_len:
        raise ValueError(
            f"Replacement is {len(replacement)} bytes, expected {pattern_len}"
        )
    if offset < 0 or offset + pattern_len > len(buffer):
        raise ValueError(
            f"Region {offset:#x}+{pattern_len} is outside a buffer of {len(buffer)} bytes"
        )
    return buffer[:offset] + replacement + buffer[offset + pattern_len :]


# ---------------------------------------------------------------------------
# Backups


def backup_path(target: PathLike) -> Path:
    target = Path(target)
    return target.with_name(target.name + BACKUP_SUFFIX)


def has_backup(target: PathLike) -> bool:
    return backup_path(target).exists()


def ensure_backup(target: PathLike) -> bool:
    """Copy target to its backup unless a backup already exists.

    An existing backup is never overwritten so it keeps the pristine
    content captured before the first patch.

    Returns:
        True if a new backup was created, False if one was already present
    """
    backup = backup_path(target)
    if backup.exists():
        return False
    shutil.copy2(target, backup)
    logger.info("Created backup %s", backup)
    return True


def restore_backup(target: PathLike) -> None:
    """Overwrite target with its backup.

    Raises:
        NoBackupError: If no backup exists
        OSError: If copying fails
    """
    backup = backup_path(target)
    if not backup.exists():
        raise NoBackupError(f"No backup file found ({BACKUP_SUFFIX})")
    shutil.copy2(backup, target)
    logger.info("Restored %s from %s", target, backup)


# ---------------------------------------------------------------------------
# Controller

Notifier = Callable[[Severity, str], None]


def log_notifier(severity: Severity, message: str) -> None:
    """Default notifier, forwards notifications to the log."""
    level = {
        Severity.INFO: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.ERROR: logging.ERROR,
    }[severity]
    logger.log(level, message)


class PatchController:
    """Runs patch, restore and status against the debugger library.

    Every operation checks the platform first, then locates the library
    under the configured extension root. Errors never escape an operation,
    they are turned into a failed :class:`Outcome` instead.
    """

    def __init__(
        self,
        extension_root: Optional[PathLike] = None,
        platform: Optional[str] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.extension_root = extension_root
        self.platform = platform if platform is not None else sys.platform
        self.notifier: Notifier = notifier or log_notifier

    @property
    def is_supported_platform(self) -> bool:
        return self.platform.startswith(SUPPORTED_PLATFORM)

    def locate(self) -> Optional[Path]:
        return locate(self.extension_root)

    def _require_library(self) -> Path:
        lib_path = self.locate()
        if lib_path is None:
            raise NotFoundError(
                f"Could not find {LIBRARY_NAME}. Is the C# extension installed?"
            )
        return lib_path

    def patch(self) -> Outcome:
        """Patch the library in place, creating a backup first.

        Returns:
            Outcome with the patched offset on success
        """
        if not self.is_supported_platform:
            return Outcome(success=False, message=unsupported_platform_message())

        try:
            lib_path = self._require_library()

            ensure_backup(lib_path)
            data = lib_path.read_bytes()

            state = classify(data)
            if state == PatchState.PATCHED:
                return Outcome(
                    success=True, message=f"{LIBRARY_NAME} is already patched"
                )
            if state == PatchState.UNKNOWN:
                raise PatternNotFoundError(
                    f"Original byte pattern not found in {LIBRARY_NAME}"
                )

            offset = find_pattern(data, ORIGINAL_BYTES)
            patched = apply_patch(data, offset, len(ORIGINAL_BYTES), PATCHED_BYTES)
            lib_path.write_bytes(patched)

            logger.info("Patched %s at offset %#x", lib_path, offset)
            return Outcome(
                success=True,
                message=f"Successfully patched {LIBRARY_NAME} at offset 0x{offset:X}",
                offset=offset,
            )
        except NotFoundError as e:
            logger.debug("%s", e)
            return Outcome(success=False, message=str(e))
        except PatternNotFoundError as e:
            return Outcome(success=False, message=str(e))
        except (IOError, OSError) as e:
            logger.error("Failed to patch %s: %s", LIBRARY_NAME, e)
            return Outcome(success=False, message=f"Patch failed: {e}")
        except Exception as e:
            logger.exception("Unexpected error while patching")
            return Outcome(success=False, message=f"Patch failed: {e}")

    def restore(self) -> Outcome:
        """Restore the library from its backup."""
        if not self.is_supported_platform:
            return Outcome(success=False, message=unsupported_platform_message())

        try:
            lib_path = self._require_library()
            restore_backup(lib_path)
            return Outcome(
                success=True,
                message=f"Successfully restored {LIBRARY_NAME} from backup",
            )
        except NotFoundError as e:
            logger.debug("%s", e)
            return Outcome(success=False, message=str(e))
        except NoBackupError as e:
            return Outcome(success=False, message=str(e))
        except (IOError, OSError) as e:
            logger.error("Failed to restore %s: %s", LIBRARY_NAME, e)
            return Outcome(success=False, message=f"Restore failed: {e}")
        except Exception as e:
            logger.exception("Unexpected error while restoring")
            return Outcome(success=False, message=f"Restore failed: {e}")

    def status(self) -> StatusReport:
        """Report the library location, backup and patch state without writing."""
        if not self.is_supported_platform:
            return StatusReport(found=False, error=unsupported_platform_message())

        lib_path = self.locate()
        if lib_path is None:
            return StatusReport(found=False)

        try:
            data = lib_path.read_bytes()
            return StatusReport(
                found=True,
                path=str(lib_path),
                backup_exists=has_backup(lib_path),
                state=classify(data),
            )
        except Exception as e:
            logger.error("Failed to check status of %s: %s", lib_path, e)
            return StatusReport(
                found=True,
                path=str(lib_path),
                error=f"Failed to check status: {e}",
            )

    def auto_check(self) -> Optional[Outcome]:
        """Patch an unpatched library at startup.

        Only a library in the ORIGINAL state is written. Unknown content is
        left alone. Failures are sent to the notifier as warnings.

        Returns:
            The patch outcome if a patch was attempted, otherwise None
        """
        try:
            if not self.is_supported_platform:
                logger.debug("Skipping patch - not running on %s", SUPPORTED_PLATFORM)
                return None

            lib_path = self.locate()
            if lib_path is None:
                # C# extension not installed
                return None

            state = classify(lib_path.read_bytes())
            if state == PatchState.PATCHED:
                logger.info("%s is already patched", LIBRARY_NAME)
                return None
            if state == PatchState.UNKNOWN:
                logger.warning(
                    "%s does not contain a known byte pattern, not patching",
                    lib_path,
                )
                return None

            logger.info("Unpatched %s detected, applying patch...", LIBRARY_NAME)
            outcome = self.patch()
            if outcome.success:
                logger.info("Auto-patch successful")
                self.notifier(
                    Severity.INFO,
                    f"Automatically patched {LIBRARY_NAME} for code-oss compatibility",
                )
            else:
                logger.warning("Auto-patch failed: %s", outcome.message)
                self.notifier(Severity.WARNING, f"Auto-patch failed - {outcome.message}")
            return outcome
        except Exception as e:
            logger.warning("Auto-patch check failed: %s", e)
            return None


def unsupported_platform_message() -> str:
    return f"vsdbg-patcher only works on {SUPPORTED_PLATFORM.capitalize()}"


def build_controller(
    settings: Settings, notifier: Optional[Notifier] = None
) -> PatchController:
    """Create a controller for the configured or discovered extension root."""
    root = settings.extension_root or find_extension_root(settings.extensions_dirs)
    return PatchController(extension_root=root, notifier=notifier)
