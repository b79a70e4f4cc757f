import argparse
import faulthandler
import os
import sys
import threading
import traceback

from PyQt6.QtWidgets import QApplication

from tokenchart.core.config import load_config
from tokenchart.core.data_fetch import ChartApiClient
from tokenchart.core.models import CURRENCIES
from tokenchart.ui.main_window import MainWindow

_FAULT_LOG_HANDLE = None


def _log_dir() -> str:
    path = os.environ.get('TOKENCHART_LOG_DIR') or os.path.join(os.path.expanduser('~'), '.tokenchart')
    os.makedirs(path, exist_ok=True)
    return path


def _install_exception_logging(log_dir: str) -> None:
    log_path = os.path.join(log_dir, 'exception.log')

    def _hook(exc_type, exc_value, exc_tb):
        try:
            with open(log_path, 'a', encoding='utf-8') as handle:
                handle.write('\n=== Unhandled Exception ===\n')
                traceback.print_exception(exc_type, exc_value, exc_tb, file=handle)
        except Exception:
            pass
        traceback.print_exception(exc_type, exc_value, exc_tb)

    def _thread_hook(args):
        _hook(args.exc_type, args.exc_value, args.exc_traceback)

    sys.excepthook = _hook
    threading.excepthook = _thread_hook


def _enable_faulthandler(log_dir: str) -> None:
    global _FAULT_LOG_HANDLE
    try:
        # Kept open for the process lifetime; faulthandler writes on crash.
        _FAULT_LOG_HANDLE = open(os.path.join(log_dir, 'faulthandler.log'), 'w', encoding='utf-8')
        _FAULT_LOG_HANDLE.write(f'pid={os.getpid()}\n')
        _FAULT_LOG_HANDLE.flush()
        faulthandler.enable(_FAULT_LOG_HANDLE, all_threads=True)
    except OSError:
        faulthandler.enable(all_threads=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='tokenchart', description='Live price chart for a single token.')
    parser.add_argument('token_id', help='Token identifier used by the chart API (md5 or slug)')
    parser.add_argument('--api-url', default=None, help='Chart API base URL')
    parser.add_argument('--currency', default=None, choices=CURRENCIES, help='Quote currency')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    log_dir = _log_dir()
    _enable_faulthandler(log_dir)
    _install_exception_logging(log_dir)

    overrides = {}
    if args.api_url:
        overrides['api_url'] = args.api_url.rstrip('/')
    if args.currency:
        overrides['default_currency'] = args.currency
    config = load_config(**overrides)
    client = ChartApiClient(config.api_url, timeout=config.request_timeout)

    app = QApplication(sys.argv[:1])
    window = MainWindow(args.token_id, client, config=config)
    window.show()
    try:
        return app.exec()
    finally:
        client.close()


if __name__ == '__main__':
    sys.exit(main())
