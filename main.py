"""
MSDB Converter
Desktop front-end for batch normalization of photos to size-limited JPEG.
"""

import logging
import sys
import time
from pathlib import Path
from typing import Optional

from PyQt6.QtWidgets import (
    QApplication, QMainWindow, QWidget, QVBoxLayout, QHBoxLayout,
    QLabel, QPushButton, QLineEdit, QProgressBar, QFileDialog, QMessageBox,
    QGroupBox, QDoubleSpinBox, QSpinBox, QTextEdit
)
from PyQt6.QtCore import Qt, QThread, pyqtSignal

from converter import (
    DEFAULT_MAX_DIMENSION, DEFAULT_MAX_SIZE_MB, ConversionResult,
    ConversionSettings, DiscoveryError, ImageTask, heif_support_warning
)
from runner import ConversionRunner, RunTally, find_image_files, prepare_output_dir

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Visual Theme
# -----------------------------------------------------------------------------

DARK_THEME_STYLESHEET = """
QWidget {
    color: #E0E0E0;
    background-color: #1E1E1E;
    font-family: "Segoe UI", sans-serif;
    font-size: 10pt;
}

QMainWindow {
    background-color: #121212;
}

QGroupBox {
    border: 1px solid #3A3A3A;
    border-radius: 8px;
    margin-top: 1.2em;
    font-weight: bold;
    background-color: #252526;
    padding: 25px 15px 15px 15px;
}
QGroupBox::title {
    subcontrol-origin: margin;
    subcontrol-position: top left;
    left: 10px;
    padding: 0 5px;
    background-color: transparent;
    color: #64B5F6;
    font-size: 15pt;
}

QPushButton {
    background-color: #3C3C3C;
    border: 1px solid #505050;
    border-radius: 6px;
    padding: 6px 12px;
    min-width: 80px;
}
QPushButton:hover {
    background-color: #4A4A4A;
    border-color: #606060;
}
QPushButton:disabled {
    background-color: #252525;
    color: #606060;
    border-color: #303030;
}
QPushButton[class="primary"] {
    background-color: #0D47A1;
    border: 1px solid #1565C0;
    color: #FFFFFF;
    font-weight: bold;
}
QPushButton[class="primary"]:hover {
    background-color: #1565C0;
    border-color: #1976D2;
}

QLineEdit, QSpinBox, QDoubleSpinBox, QTextEdit {
    background-color: #2D2D2D;
    border: 1px solid #404040;
    border-radius: 4px;
    padding: 5px;
    selection-background-color: #0D47A1;
    color: #FFFFFF;
}
QLineEdit:focus, QSpinBox:focus, QDoubleSpinBox:focus {
    border: 1px solid #64B5F6;
    background-color: #333333;
}

QProgressBar {
    border: 1px solid #404040;
    border-radius: 6px;
    text-align: center;
    background-color: #202020;
    height: 20px;
}
QProgressBar::chunk {
    background-color: qlineargradient(x1:0, y1:0, x2:1, y2:0, stop:0 #1565C0, stop:1 #2196F3);
    border-radius: 5px;
}
"""


class ConversionWorker(QThread):
    """Background thread for batch image conversion."""

    progress_updated = pyqtSignal(int, int, str)  # current, total, current_file
    file_reported = pyqtSignal(str)  # warning or error line
    conversion_complete = pyqtSignal(object)  # RunTally
    error_occurred = pyqtSignal(str)

    def __init__(
        self,
        source_dir: Path,
        dest_dir: Path,
        settings: ConversionSettings,
        max_workers: Optional[int] = None,
        parent=None
    ):
        super().__init__(parent)
        self.source_dir = source_dir
        self.dest_dir = dest_dir
        self.settings = settings
        self.runner = ConversionRunner(max_workers=max_workers)

    def cancel(self):
        """Request cancellation of the conversion process."""
        self.runner.cancel()

    def _on_result(self, result: ConversionResult, tally: RunTally):
        if result.message:
            self.file_reported.emit(result.message)
        self.progress_updated.emit(tally.processed, tally.total, result.source_path.name)

    def run(self):
        """Execute the batch conversion process."""
        try:
            image_files = find_image_files(self.source_dir)
            if not image_files:
                self.error_occurred.emit("No image files found in the selected directory.")
                return

            plugin_warning = heif_support_warning(image_files)
            if plugin_warning:
                self.file_reported.emit(plugin_warning)

            prepare_output_dir(self.dest_dir)
            tasks = [ImageTask.from_source(f, self.dest_dir, self.settings) for f in image_files]

            tally = self.runner.run(tasks, on_result=self._on_result)
            self.conversion_complete.emit(tally)

        except DiscoveryError as e:
            self.error_occurred.emit(str(e))
        except Exception as e:
            logger.exception("Conversion run failed")
            self.error_occurred.emit(f"Conversion failed: {str(e)}")


class MainWindow(QMainWindow):
    """Main application window."""

    def __init__(self):
        super().__init__()
        self.conversion_worker: Optional[ConversionWorker] = None
        self.last_update_time = 0
        self.init_ui()

    def init_ui(self):
        """Initialize the user interface."""
        self.setWindowTitle("MSDB Converter")
        self.setMinimumSize(640, 620)

        central_widget = QWidget()
        self.setCentralWidget(central_widget)

        main_layout = QVBoxLayout(central_widget)
        main_layout.setSpacing(20)
        main_layout.setContentsMargins(20, 20, 20, 20)
        main_layout.setAlignment(Qt.AlignmentFlag.AlignTop)

        # 1. Folder Selection
        folder_group = QGroupBox("Folders")
        folder_layout = QVBoxLayout(folder_group)

        source_layout = QHBoxLayout()
        source_layout.addWidget(QLabel("Source:"))
        self.source_edit = QLineEdit()
        self.source_edit.setPlaceholderText("Select folder...")
        self.source_edit.textChanged.connect(self.on_source_changed)
        source_layout.addWidget(self.source_edit)
        self.source_btn = QPushButton("Browse...")
        self.source_btn.clicked.connect(self.browse_source)
        source_layout.addWidget(self.source_btn)
        folder_layout.addLayout(source_layout)

        dest_layout = QHBoxLayout()
        dest_layout.addWidget(QLabel("Output:"))
        self.dest_edit = QLineEdit()
        self.dest_edit.setPlaceholderText("Defaults to <source>/Converted")
        dest_layout.addWidget(self.dest_edit)
        self.dest_btn = QPushButton("Browse...")
        self.dest_btn.clicked.connect(self.browse_dest)
        dest_layout.addWidget(self.dest_btn)
        folder_layout.addLayout(dest_layout)

        self.file_count_label = QLabel("No folder selected")
        self.file_count_label.setStyleSheet("color: #AAAAAA;")
        folder_layout.addWidget(self.file_count_label)

        main_layout.addWidget(folder_group)

        # 2. Limits
        limits_group = QGroupBox("Limits")
        limits_layout = QHBoxLayout(limits_group)

        limits_layout.addWidget(QLabel("Max size:"))
        self.size_spin = QDoubleSpinBox()
        self.size_spin.setRange(0.01, 1024.0)
        self.size_spin.setDecimals(2)
        self.size_spin.setSingleStep(0.5)
        self.size_spin.setSuffix(" MB")
        self.size_spin.setValue(DEFAULT_MAX_SIZE_MB)
        limits_layout.addWidget(self.size_spin)

        limits_layout.addWidget(QLabel("Max dimension:"))
        self.dimension_spin = QSpinBox()
        self.dimension_spin.setRange(1, 100000)
        self.dimension_spin.setSingleStep(100)
        self.dimension_spin.setSuffix(" px")
        self.dimension_spin.setValue(DEFAULT_MAX_DIMENSION)
        limits_layout.addWidget(self.dimension_spin)

        main_layout.addWidget(limits_group)

        # 3. Progress & Action
        action_group = QGroupBox("Execution")
        action_layout = QVBoxLayout(action_group)

        self.progress_bar = QProgressBar()
        self.progress_bar.setValue(0)
        action_layout.addWidget(self.progress_bar)

        self.progress_label = QLabel("Ready")
        self.progress_label.setAlignment(Qt.AlignmentFlag.AlignCenter)
        action_layout.addWidget(self.progress_label)

        btn_layout = QHBoxLayout()
        self.start_btn = QPushButton("Start conversion")
        self.start_btn.setProperty("class", "primary")
        self.start_btn.setMinimumHeight(45)
        self.start_btn.clicked.connect(self.start_conversion)
        btn_layout.addWidget(self.start_btn)

        self.cancel_btn = QPushButton("Cancel")
        self.cancel_btn.setMinimumHeight(45)
        self.cancel_btn.clicked.connect(self.cancel_conversion)
        self.cancel_btn.setEnabled(False)
        btn_layout.addWidget(self.cancel_btn)

        action_layout.addLayout(btn_layout)

        self.log_view = QTextEdit()
        self.log_view.setReadOnly(True)
        self.log_view.setPlaceholderText("Warnings and errors appear here")
        action_layout.addWidget(self.log_view, 1)

        main_layout.addWidget(action_group, 1)

    def browse_source(self):
        """Open dialog to select source folder."""
        start_dir = self.source_edit.text() or ""
        folder = QFileDialog.getExistingDirectory(self, "Select Source Folder", start_dir)
        if folder:
            self.source_edit.setText(folder)

    def browse_dest(self):
        """Open dialog to select destination folder."""
        start_dir = self.dest_edit.text() or self.source_edit.text() or ""
        folder = QFileDialog.getExistingDirectory(self, "Select Output Folder", start_dir)
        if folder:
            self.dest_edit.setText(folder)

    def on_source_changed(self):
        """Show how many convertible files the source folder holds."""
        source_path = Path(self.source_edit.text())
        if not self.source_edit.text() or not source_path.is_dir():
            self.file_count_label.setText("No folder selected")
            return
        try:
            count = len(find_image_files(source_path))
        except DiscoveryError as e:
            self.file_count_label.setText(str(e))
            return
        self.file_count_label.setText(f"{count} image files found")

    def set_ui_enabled(self, enabled: bool):
        """Enable or disable UI elements during conversion."""
        self.source_edit.setEnabled(enabled)
        self.dest_edit.setEnabled(enabled)
        self.source_btn.setEnabled(enabled)
        self.dest_btn.setEnabled(enabled)
        self.size_spin.setEnabled(enabled)
        self.dimension_spin.setEnabled(enabled)
        self.start_btn.setEnabled(enabled)
        self.cancel_btn.setEnabled(not enabled)

    def start_conversion(self):
        """Start the batch conversion process."""
        source = self.source_edit.text()
        if not source:
            QMessageBox.warning(self, "Error", "Please select a source folder.")
            return

        source_path = Path(source)
        if not source_path.is_dir():
            QMessageBox.warning(self, "Error", "Source folder does not exist.")
            return

        dest = self.dest_edit.text()
        dest_path = Path(dest) if dest else source_path / "Converted"

        settings = ConversionSettings(
            max_size_mb=self.size_spin.value(),
            max_dimension=self.dimension_spin.value(),
        )

        self.set_ui_enabled(False)
        self.progress_bar.setValue(0)
        self.progress_label.setText("Starting conversion...")
        self.log_view.clear()
        self.last_update_time = 0

        self.conversion_worker = ConversionWorker(
            source_dir=source_path,
            dest_dir=dest_path,
            settings=settings,
        )
        self.conversion_worker.progress_updated.connect(self.on_progress_updated)
        self.conversion_worker.file_reported.connect(self.on_file_reported)
        self.conversion_worker.conversion_complete.connect(self.on_conversion_complete)
        self.conversion_worker.error_occurred.connect(self.on_error)

        self.conversion_worker.start()

    def cancel_conversion(self):
        """Cancel the ongoing conversion."""
        if self.conversion_worker:
            self.conversion_worker.cancel()
            self.progress_label.setText("Cancelling...")

    def on_progress_updated(self, current: int, total: int, current_file: str):
        """Handle progress updates from the worker thread."""
        current_time = time.time()

        # Throttle to ~20fps, always show the final update
        if current == total or (current_time - self.last_update_time) >= 0.05:
            percentage = int((current / total) * 100)
            if self.progress_bar.value() != percentage:
                self.progress_bar.setValue(percentage)

            display_name = current_file
            if len(display_name) > 40:
                display_name = "..." + display_name[-37:]

            self.progress_label.setText(f"{current} of {total} files - {display_name}")
            self.last_update_time = current_time

    def on_file_reported(self, message: str):
        color = "#FFD54F" if message.startswith("[WARN]") else "#EF5350"
        self.log_view.append(f'<span style="color: {color};">{message}</span>')

    def on_conversion_complete(self, tally: RunTally):
        """Handle completion of the conversion process."""
        self.set_ui_enabled(True)
        self.progress_label.setText("Conversion complete!")

        message = f"Converted: {tally.succeeded} files"
        if tally.warnings:
            message += f"\nOver budget: {tally.warnings} files"
        if tally.failed:
            message += f"\nFailed: {tally.failed} files"
        if tally.cancelled:
            message += f"\nCancelled: {tally.cancelled} files"
        message += f"\n\nOutput folder: {self.conversion_worker.dest_dir}"

        QMessageBox.information(self, "Conversion Complete", message)

    def on_error(self, error_message: str):
        """Handle errors from the worker thread."""
        self.set_ui_enabled(True)
        self.progress_label.setText("Error occurred")
        QMessageBox.critical(self, "Error", error_message)


def main():
    """Application entry point."""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    app = QApplication(sys.argv)
    app.setStyle('Fusion')
    app.setStyleSheet(DARK_THEME_STYLESHEET)
    font = app.font()
    font.setPointSize(font.pointSize() + 1)
    app.setFont(font)

    window = MainWindow()
    window.show()

    sys.exit(app.exec())


if __name__ == '__main__':
    main()
