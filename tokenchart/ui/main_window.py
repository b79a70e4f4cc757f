from PyQt6.QtCore import QSettings, Qt
from PyQt6.QtGui import QAction
from PyQt6.QtWidgets import QDockWidget, QMainWindow, QStyle, QTabWidget

from .chart_view import ChartView
from .debug_dock import DebugDock
from .error_dock import ErrorDock


class MainWindow(QMainWindow):
    def __init__(self, token_id: str, client, config=None, settings=None) -> None:
        super().__init__()
        self.setWindowTitle(f'TokenChart · {token_id}')
        self.resize(1400, 900)
        self._settings = settings if settings is not None else QSettings('TokenChart', 'TokenChart')

        self.error_dock = ErrorDock()
        self.debug_dock = DebugDock()
        self.chart_view = ChartView(
            token_id,
            client,
            config=config,
            error_sink=self.error_dock,
            debug_sink=self.debug_dock,
            settings=self._settings,
        )
        self.setCentralWidget(self.chart_view)

        self.addDockWidget(Qt.DockWidgetArea.BottomDockWidgetArea, self.error_dock)
        self.addDockWidget(Qt.DockWidgetArea.BottomDockWidgetArea, self.debug_dock)
        self.tabifyDockWidget(self.error_dock, self.debug_dock)
        self.setTabPosition(Qt.DockWidgetArea.BottomDockWidgetArea, QTabWidget.TabPosition.South)
        self.error_dock.raise_()
        self._set_dock_icons()

        self._setup_menu()
        self._restore_layout()

    def _set_dock_icons(self) -> None:
        try:
            style = self.style()
            self.error_dock.setWindowIcon(style.standardIcon(QStyle.StandardPixmap.SP_MessageBoxCritical))
            self.debug_dock.setWindowIcon(style.standardIcon(QStyle.StandardPixmap.SP_ComputerIcon))
        except Exception:
            pass

    def _setup_menu(self) -> None:
        window_menu = self.menuBar().addMenu('Window')
        self._dock_actions = []
        for dock in (self.error_dock, self.debug_dock):
            action = QAction(dock.windowTitle(), self)
            action.setCheckable(True)
            action.setChecked(not dock.isHidden())
            action.triggered.connect(lambda checked, d=dock: self._toggle_dock(d, checked))
            dock.visibilityChanged.connect(lambda visible, a=action: a.setChecked(visible))
            window_menu.addAction(action)
            self._dock_actions.append(action)

    def _toggle_dock(self, dock: QDockWidget, visible: bool) -> None:
        if visible:
            dock.show()
            dock.raise_()
        else:
            dock.hide()

    def closeEvent(self, event) -> None:
        self._save_layout()
        self.chart_view.shutdown()
        super().closeEvent(event)

    def _save_layout(self) -> None:
        self._settings.setValue('geometry', self.saveGeometry())
        self._settings.setValue('windowState', self.saveState())

    def _restore_layout(self) -> None:
        geometry = self._settings.value('geometry')
        window_state = self._settings.value('windowState')
        if geometry is not None:
            self.restoreGeometry(geometry)
        if window_state is not None:
            self.restoreState(window_state)
