import time

from PyQt6.QtWidgets import QDockWidget, QPlainTextEdit


class DebugDock(QDockWidget):
    """Callable debug sink: `dock(message)` appends one timestamped line."""

    def __init__(self, max_lines: int = 500) -> None:
        super().__init__('Debug')
        self.setObjectName('DebugDock')
        self.text = QPlainTextEdit()
        self.text.setReadOnly(True)
        self.text.setMaximumBlockCount(int(max_lines))
        self.text.setPlaceholderText('Fetch and render diagnostics.')
        self.setWidget(self.text)

    def __call__(self, message: str) -> None:
        self.text.appendPlainText(f'{time.strftime("%H:%M:%S")} {message}')
