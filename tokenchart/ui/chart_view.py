from contextlib import ExitStack
import time
from typing import Dict, Optional

from PyQt6.QtCore import QSettings
from PyQt6.QtGui import QAction
from PyQt6.QtWidgets import (
    QButtonGroup,
    QComboBox,
    QHBoxLayout,
    QLabel,
    QMenu,
    QPushButton,
    QToolButton,
    QVBoxLayout,
    QWidget,
)

from tokenchart.core.config import ChartConfig
from tokenchart.core.errors import InvalidSelectionError
from tokenchart.core.models import (
    CURRENCIES,
    INDICATOR_LABELS,
    INTERVALS,
    RANGE_DEFAULT_INTERVAL,
    AthInfo,
    ChartRange,
    ChartSelection,
    ChartType,
    IndicatorKind,
    is_valid_interval,
)
from tokenchart.core.normalizer import CURRENCY_SYMBOLS, format_price, to_fixed
from tokenchart.core.orchestrator import DATA_EMPTY, ChartOrchestrator

from .pg_surface import create_surface
from .theme import theme

CHART_TYPE_LABELS = {
    ChartType.CANDLES: 'Candles',
    ChartType.LINE: 'Line',
    ChartType.HOLDERS: 'Holders',
}


class ChartView(QWidget):
    def __init__(
        self,
        token_id: str,
        client,
        config: Optional[ChartConfig] = None,
        error_sink=None,
        debug_sink=None,
        surface_factory=None,
        settings: Optional[QSettings] = None,
    ) -> None:
        super().__init__()
        self.config = config or ChartConfig()
        self.error_sink = error_sink
        self.debug_sink = debug_sink
        self._settings = settings if settings is not None else QSettings('TokenChart', 'TokenChart')
        self._syncing = False
        self._last_update: Optional[float] = None
        self._closed = False

        layout = QVBoxLayout(self)
        layout.setContentsMargins(0, 0, 0, 0)
        layout.setSpacing(0)

        self.toolbar = QWidget()
        self.toolbar.setObjectName('TopToolbar')
        toolbar_layout = QHBoxLayout(self.toolbar)
        toolbar_layout.setContentsMargins(6, 6, 6, 4)
        toolbar_layout.setSpacing(6)

        self.chart_type_buttons: Dict[ChartType, QPushButton] = {}
        self.chart_type_group = QButtonGroup(self)
        self.chart_type_group.setExclusive(True)
        for chart_type, label in CHART_TYPE_LABELS.items():
            button = QPushButton(label)
            button.setCheckable(True)
            button.setMinimumHeight(22)
            button.clicked.connect(lambda _checked, val=chart_type: self._set_chart_type(val))
            self.chart_type_buttons[chart_type] = button
            self.chart_type_group.addButton(button)
            toolbar_layout.addWidget(button)

        toolbar_layout.addSpacing(8)
        self.range_buttons: Dict[ChartRange, QPushButton] = {}
        self.range_group = QButtonGroup(self)
        self.range_group.setExclusive(True)
        for chart_range in ChartRange:
            button = QPushButton(chart_range.value)
            button.setCheckable(True)
            button.setMinimumHeight(22)
            button.clicked.connect(lambda _checked, val=chart_range: self._set_range(val))
            self.range_buttons[chart_range] = button
            self.range_group.addButton(button)
            toolbar_layout.addWidget(button)

        self.interval_box = QComboBox()
        for interval in INTERVALS:
            self.interval_box.addItem(interval, interval)
        self.interval_box.currentIndexChanged.connect(self._on_interval_changed)
        toolbar_layout.addWidget(self.interval_box)

        self.currency_box = QComboBox()
        for currency in CURRENCIES:
            self.currency_box.addItem(currency, currency)
        self.currency_box.currentIndexChanged.connect(self._on_currency_changed)
        toolbar_layout.addWidget(self.currency_box)

        self.indicator_button = QToolButton()
        self.indicator_button.setText('Indicators')
        self.indicator_button.setPopupMode(QToolButton.ToolButtonPopupMode.InstantPopup)
        self.indicator_menu = QMenu(self.indicator_button)
        self.indicator_actions: Dict[IndicatorKind, QAction] = {}
        for kind in IndicatorKind:
            action = QAction(INDICATOR_LABELS[kind], self.indicator_menu)
            action.setCheckable(True)
            action.toggled.connect(lambda checked, val=kind: self._on_indicator_toggled(val, checked))
            self.indicator_menu.addAction(action)
            self.indicator_actions[kind] = action
        self.indicator_button.setMenu(self.indicator_menu)
        toolbar_layout.addWidget(self.indicator_button)

        self.status_label = QLabel('')
        toolbar_layout.addWidget(self.status_label)
        toolbar_layout.addStretch(1)
        self.ath_label = QLabel('')
        toolbar_layout.addWidget(self.ath_label)
        layout.addWidget(self.toolbar)

        self.tooltip_label = QLabel('')
        self.tooltip_label.setObjectName('ChartTooltip')
        self.tooltip_label.setContentsMargins(8, 2, 8, 2)
        layout.addWidget(self.tooltip_label)

        self._chart_container = QWidget()
        chart_layout = QVBoxLayout(self._chart_container)
        chart_layout.setContentsMargins(0, 0, 0, 0)
        chart_layout.setSpacing(0)
        layout.addWidget(self._chart_container, 1)

        self.orchestrator = ChartOrchestrator(
            token_id,
            client,
            config=self.config,
            selection=self._restore_selection(),
            error_sink=error_sink,
            debug_sink=debug_sink,
            parent=self,
        )
        self.orchestrator.loading_changed.connect(self._refresh_status)
        self.orchestrator.updating_changed.connect(self._refresh_status)
        self.orchestrator.data_state_changed.connect(self._refresh_status)
        self.orchestrator.scrolled_away_changed.connect(self._refresh_status)
        self.orchestrator.last_update_changed.connect(self._on_last_update)
        self.orchestrator.ath_changed.connect(self._on_ath_changed)
        self._sync_controls()

        self._scope = ExitStack()
        self.surface = self._scope.enter_context(
            self.orchestrator.session(surface_factory or create_surface, self._chart_container, {})
        )
        self.surface.subscribe_crosshair_move(self._on_crosshair_move)
        self._refresh_status()

    # -- preferences -----------------------------------------------------

    def _restore_selection(self) -> ChartSelection:
        selection = ChartSelection(currency=self.config.default_currency)
        try:
            selection.chart_type = ChartType(self._settings.value('chartType', selection.chart_type.value))
        except ValueError:
            pass
        try:
            selection.range = ChartRange(self._settings.value('range', selection.range.value))
        except ValueError:
            pass
        interval = self._settings.value('interval')
        if isinstance(interval, str) and is_valid_interval(selection.range, interval):
            selection.interval = interval
        else:
            selection.interval = RANGE_DEFAULT_INTERVAL[selection.range]
        currency = self._settings.value('currency')
        if isinstance(currency, str) and currency in CURRENCIES:
            selection.currency = currency
        saved = self._settings.value('indicators')
        if isinstance(saved, str):
            saved = [saved] if saved else []
        if isinstance(saved, list):
            kinds = set()
            for value in saved:
                try:
                    kinds.add(IndicatorKind(str(value)))
                except ValueError:
                    continue
            selection.indicators = frozenset(kinds)
        return selection

    def _save_selection(self) -> None:
        selection = self.orchestrator.selection
        self._settings.setValue('chartType', selection.chart_type.value)
        self._settings.setValue('range', selection.range.value)
        self._settings.setValue('interval', selection.interval)
        self._settings.setValue('currency', selection.currency)
        self._settings.setValue('indicators', sorted(k.value for k in selection.indicators))

    # -- controls --------------------------------------------------------

    def _sync_controls(self) -> None:
        selection = self.orchestrator.selection
        self._syncing = True
        try:
            self.chart_type_buttons[selection.chart_type].setChecked(True)
            self.range_buttons[selection.range].setChecked(True)
            model = self.interval_box.model()
            for idx, interval in enumerate(INTERVALS):
                item = model.item(idx)
                if item is not None:
                    item.setEnabled(is_valid_interval(selection.range, interval))
            self.interval_box.setCurrentIndex(INTERVALS.index(selection.interval))
            self.currency_box.setCurrentIndex(CURRENCIES.index(selection.currency))
            holders = selection.chart_type == ChartType.HOLDERS
            self.interval_box.setEnabled(not holders)
            self.currency_box.setEnabled(not holders)
            self.indicator_button.setEnabled(not holders)
            for kind, action in self.indicator_actions.items():
                action.setChecked(kind in selection.indicators)
        finally:
            self._syncing = False

    def _set_chart_type(self, chart_type: ChartType) -> None:
        self.orchestrator.set_chart_type(chart_type)
        self._after_selection_change()

    def _set_range(self, chart_range: ChartRange) -> None:
        self.orchestrator.set_range(chart_range)
        self._after_selection_change()

    def _on_interval_changed(self, index: int) -> None:
        if self._syncing or index < 0:
            return
        try:
            self.orchestrator.set_interval(self.interval_box.itemData(index))
        except InvalidSelectionError as exc:
            self._report_error(str(exc))
        self._after_selection_change()

    def _on_currency_changed(self, index: int) -> None:
        if self._syncing or index < 0:
            return
        try:
            self.orchestrator.set_currency(self.currency_box.itemData(index))
        except InvalidSelectionError as exc:
            self._report_error(str(exc))
        self._after_selection_change()

    def _on_indicator_toggled(self, kind: IndicatorKind, checked: bool) -> None:
        if self._syncing:
            return
        if (kind in self.orchestrator.selection.indicators) != checked:
            self.orchestrator.toggle_indicator(kind)
        self._save_selection()

    def _after_selection_change(self) -> None:
        self._sync_controls()
        self._save_selection()
        self.tooltip_label.setText('')
        self._refresh_status()

    # -- status ----------------------------------------------------------

    def _refresh_status(self, *args) -> None:
        orchestrator = self.orchestrator
        color = theme.TEXT
        if orchestrator.is_loading:
            text = 'Loading...'
        elif orchestrator.data_state == DATA_EMPTY:
            text = 'No data available'
            color = theme.WARNING
        elif orchestrator.is_user_scrolled_away:
            text = 'Live paused'
            color = theme.WARNING
        elif orchestrator.is_updating:
            text = 'Updating...'
        elif self._last_update is not None:
            text = f'Live · {time.strftime("%H:%M:%S", time.localtime(self._last_update))}'
            color = theme.UP
        else:
            text = ''
        self.status_label.setText(text)
        self.status_label.setStyleSheet(f'color: {color};')

    def _on_last_update(self, timestamp: float) -> None:
        self._last_update = timestamp
        self._refresh_status()

    def _on_ath_changed(self, info: AthInfo) -> None:
        if info is None or info.price is None:
            self.ath_label.setText('')
            return
        currency = self.orchestrator.selection.currency
        text = f'ATH {format_price(info.price, currency, CURRENCY_SYMBOLS.get(currency, ""))}'
        if info.percent_from_ath is not None:
            text += f' ({to_fixed(info.percent_from_ath, 2)}%)'
        self.ath_label.setText(text)

    def _on_crosshair_move(self, time_s: Optional[int]) -> None:
        info = self.orchestrator.describe_point(time_s)
        if info is None:
            self.tooltip_label.setText('')
            return
        parts = [info['date']] + [f'{label} {value}' for label, value in info['rows']]
        self.tooltip_label.setText('   '.join(parts))
        self.tooltip_label.setStyleSheet(f'color: {theme.UP if info["up"] else theme.DOWN};')

    def _report_error(self, message: str) -> None:
        if self.error_sink is not None:
            try:
                self.error_sink.append_error(message)
            except Exception:
                pass

    # -- teardown --------------------------------------------------------

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._save_selection()
        self._scope.close()
        self.orchestrator.shutdown()

    def closeEvent(self, event) -> None:
        self.shutdown()
        super().closeEvent(event)
