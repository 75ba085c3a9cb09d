import sys
import logging
from pathlib import Path
from typing import Optional

from PyQt6.QtWidgets import (
    QApplication,
    QMainWindow,
    QWidget,
    QVBoxLayout,
    QHBoxLayout,
    QGroupBox,
    QPushButton,
    QFileDialog,
    QLineEdit,
    QLabel,
    QMessageBox,
)
from PyQt6.QtCore import QTimer

from vsdbg_patcher import (
    __version__,
    LIBRARY_NAME,
    Outcome,
    PatchController,
    Settings,
    Severity,
    build_controller,
    get_settings_path,
    load_settings,
    save_settings,
)

logger = logging.getLogger(__name__)


class MainWindow(QMainWindow):
    def __init__(
        self,
        settings_file: Optional[Path] = None,
        controller: Optional[PatchController] = None,
    ) -> None:
        """Initialize the main window, load settings and schedule the startup check.

        Args:
            settings_file: Settings location, defaults to the standard one
            controller: Pre-built controller, mainly for tests. Built from
                the settings when omitted.
        """
        super().__init__()

        self.settings_file = settings_file or get_settings_path()
        self.settings: Settings = load_settings(self.settings_file)
        self.controller = controller or build_controller(self.settings, self.notify)

        self.setWindowTitle(f"vsdbg patcher v{__version__}")
        self.setMinimumSize(600, 200)

        self.init_ui()
        self.update_library_ui()

        # Runs once the event loop starts, never blocks the buttons
        if self.settings.auto_patch:
            QTimer.singleShot(0, self.run_auto_check)

    def notify(self, severity: Severity, message: str) -> None:
        """Show a notification with the matching message box style."""
        if severity == Severity.ERROR:
            QMessageBox.critical(self, "Error", message)
        elif severity == Severity.WARNING:
            QMessageBox.warning(self, "Warning", message)
        else:
            QMessageBox.information(self, "vsdbg patcher", message)

    def show_outcome(self, outcome: Outcome) -> None:
        self.notify(outcome.severity, outcome.message)

    def run_auto_check(self) -> None:
        try:
            self.controller.auto_check()
        except Exception as e:
            logger.warning("Auto-patch check failed: %s", e)
        self.update_library_ui()

    def patch(self) -> None:
        try:
            self.show_outcome(self.controller.patch())
        except Exception as e:
            QMessageBox.critical(self, "Error", f"Patch failed: {e}")
        self.update_library_ui()

    def restore(self) -> None:
        try:
            self.show_outcome(self.controller.restore())
        except Exception as e:
            QMessageBox.critical(self, "Error", f"Restore failed: {e}")
        self.update_library_ui()

    def status(self) -> None:
        try:
            report = self.controller.status()
            if report.error and report.found:
                QMessageBox.critical(self, "Error", report.message)
            else:
                QMessageBox.information(self, "Status", report.message)
        except Exception as e:
            QMessageBox.critical(self, "Error", f"Status check failed: {e}")

    def select_extension_dir(self) -> None:
        """Let the user pick the C# extension directory and remember it.

        Warns and keeps the previous directory if the selection does not
        contain the debugger library.
        """
        selected_path = QFileDialog.getExistingDirectory(
            self, "Select C# extension directory"
        )
        if not selected_path:
            return

        candidate = PatchController(
            extension_root=selected_path,
            platform=self.controller.platform,
            notifier=self.notify,
        )
        if candidate.locate() is None:
            QMessageBox.warning(
                self,
                "Warning",
                f"No .debugger/{LIBRARY_NAME} found in {selected_path}",
            )
            return

        self.controller = candidate
        self.settings.extension_root = selected_path
        if not save_settings(self.settings, self.settings_file):
            QMessageBox.warning(self, "Warning", "Failed to save settings")
        self.update_library_ui()

    def update_library_ui(self) -> None:
        """Refresh the library path field and enable buttons accordingly."""
        lib_path = self.controller.locate()
        self.library_txt.setText(str(lib_path) if lib_path else "<not found>")

        found = lib_path is not None and self.controller.is_supported_platform
        self.patch_btn.setEnabled(found)
        self.restore_btn.setEnabled(found)

    def init_ui(self) -> None:
        """Create the library group and the command buttons."""
        central_widget = QWidget()
        self.setCentralWidget(central_widget)

        main_layout = QVBoxLayout(central_widget)

        # -----------------------------------------
        library_group = QGroupBox("Library")
        library_layout = QHBoxLayout()

        label = QLabel(f"{LIBRARY_NAME}:")
        label.setMinimumWidth(100)

        self.library_txt = QLineEdit()
        self.library_txt.setEnabled(False)

        select_dir_btn = QPushButton("Change extension directory")
        select_dir_btn.clicked.connect(self.select_extension_dir)

        library_layout.addWidget(label)
        library_layout.addWidget(self.library_txt)
        library_layout.addWidget(select_dir_btn)
        library_group.setLayout(library_layout)
        # -----------------------------------------
        buttons_layout = QHBoxLayout()

        self.patch_btn = QPushButton("Patch")
        self.patch_btn.clicked.connect(self.patch)

        self.restore_btn = QPushButton("Restore")
        self.restore_btn.clicked.connect(self.restore)

        self.status_btn = QPushButton("Status")
        self.status_btn.clicked.connect(self.status)

        buttons_layout.addWidget(self.patch_btn)
        buttons_layout.addWidget(self.restore_btn)
        buttons_layout.addWidget(self.status_btn)

        main_layout.addWidget(library_group)
        main_layout.addLayout(buttons_layout)


def main() -> None:
    """Main entry point for the application.

    Configures logging, creates the QApplication with the Fusion style,
    shows the main window and starts the event loop.
    """
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    app = QApplication(sys.argv)
    app.setStyle("Fusion")
    window = MainWindow()
    window.show()
    sys.exit(app.exec())


if __name__ == "__main__":
    main()
