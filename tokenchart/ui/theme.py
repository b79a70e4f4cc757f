from PyQt6.QtGui import QColor


class _Theme:
    BG_TOP = '#141A26'
    BG_BOTTOM = '#101520'
    GRID = '#2A2E39'
    TEXT = '#B2B5BE'
    ACCENT = '#2962FF'
    UP = '#00E676'
    DOWN = '#FF5252'
    VOLUME_UP = '#00E67680'
    VOLUME_DOWN = '#FF525280'
    WARNING = '#FFB74D'
    ERROR = '#EF5350'


theme = _Theme()


def parse_color(value: str) -> QColor:
    # Accepts '#RRGGBB' and CSS-style '#RRGGBBAA' (Qt itself reads 8 digits as ARGB).
    text = (value or '').strip()
    if text.startswith('#') and len(text) == 9:
        color = QColor(text[:7])
        color.setAlpha(int(text[7:9], 16))
        return color
    return QColor(text)
