from dataclasses import dataclass, field
from enum import Enum
import threading
from typing import Any, Callable, Dict, Optional

from PyQt6.QtCore import QObject, QThread, QTimer, pyqtSignal, pyqtSlot

from tokenchart.core.errors import CancelledError, EmptyDataError


class FetchSource(str, Enum):
    PRICE = 'price'
    HOLDERS = 'holders'


class FetchKind(str, Enum):
    INITIAL = 'initial'
    REFRESH = 'refresh'


class FetchState(str, Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


@dataclass
class FetchSession:
    session_id: int
    source: FetchSource
    kind: FetchKind
    cancel_event: threading.Event = field(default_factory=threading.Event)
    in_progress: bool = True

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class FetchWorker(QThread):
    succeeded = pyqtSignal(int, object)
    empty = pyqtSignal(int)
    failed = pyqtSignal(int, str)
    cancelled = pyqtSignal(int)

    def __init__(self, session: FetchSession, fetch_fn: Callable[[threading.Event], Any]) -> None:
        super().__init__()
        self.session = session
        self.fetch_fn = fetch_fn

    def run(self) -> None:
        session_id = self.session.session_id
        try:
            data = self.fetch_fn(self.session.cancel_event)
        except CancelledError:
            self.cancelled.emit(session_id)
        except EmptyDataError:
            self.empty.emit(session_id)
        except Exception as exc:
            self.failed.emit(session_id, str(exc) or exc.__class__.__name__)
        else:
            if data:
                self.succeeded.emit(session_id, data)
            else:
                self.empty.emit(session_id)


class FetchSessionManager(QObject):
    """
    One in-flight fetch per source. Starting a fetch cancels the previous one for
    the same source; completions of anything but the current session are dropped
    before they touch state, and nothing is delivered after `shutdown()`.
    """

    succeeded = pyqtSignal(str, str, object)
    empty = pyqtSignal(str, str)
    failed = pyqtSignal(str, str, str)
    loading_changed = pyqtSignal(str, str, bool)

    def __init__(self, parent: Optional[QObject] = None, debug_sink=None) -> None:
        super().__init__(parent)
        self.debug_sink = debug_sink
        self._alive = True
        self._next_id = 0
        self._sessions: Dict[FetchSource, FetchSession] = {}
        self._states: Dict[FetchSource, FetchState] = {}
        self._outcomes: Dict[FetchSource, FetchState] = {}
        self._workers: Dict[int, FetchWorker] = {}

    @property
    def alive(self) -> bool:
        return self._alive

    def start_fetch(
        self,
        source: FetchSource,
        fetch_fn: Callable[[threading.Event], Any],
        kind: FetchKind = FetchKind.INITIAL,
    ) -> Optional[FetchSession]:
        if not self._alive:
            return None
        source = FetchSource(source)
        kind = FetchKind(kind)
        prior = self._sessions.get(source)
        if prior is not None and prior.in_progress:
            # Whoever replaces an initial load also has to resolve its spinner.
            if prior.kind == FetchKind.INITIAL:
                kind = FetchKind.INITIAL
            self._cancel_session(prior)
        self._next_id += 1
        session = FetchSession(self._next_id, source, kind)
        self._sessions[source] = session
        self._states[source] = FetchState.FETCHING

        worker = FetchWorker(session, fetch_fn)
        worker.succeeded.connect(self._on_worker_succeeded)
        worker.empty.connect(self._on_worker_empty)
        worker.failed.connect(self._on_worker_failed)
        worker.cancelled.connect(self._on_worker_cancelled)
        worker.finished.connect(self._on_worker_finished)
        self._workers[session.session_id] = worker
        self.loading_changed.emit(source.value, kind.value, True)
        worker.start()
        return session

    def cancel(self, source: FetchSource) -> bool:
        session = self._sessions.get(FetchSource(source))
        if session is None or not session.in_progress:
            return False
        self._cancel_session(session)
        return True

    def cancel_all(self) -> None:
        for source in list(self._sessions):
            self.cancel(source)

    def state(self, source: FetchSource) -> FetchState:
        return self._states.get(FetchSource(source), FetchState.IDLE)

    def last_outcome(self, source: FetchSource) -> Optional[FetchState]:
        return self._outcomes.get(FetchSource(source))

    def session(self, source: FetchSource) -> Optional[FetchSession]:
        return self._sessions.get(FetchSource(source))

    def pending_workers(self) -> int:
        return len(self._workers)

    def shutdown(self, wait_ms: int = 1500) -> None:
        self._alive = False
        self.cancel_all()
        for worker in list(self._workers.values()):
            if worker.isRunning():
                worker.wait(wait_ms)

    def _cancel_session(self, session: FetchSession) -> None:
        session.cancel_event.set()
        session.in_progress = False
        self._outcomes[session.source] = FetchState.CANCELLED
        self._states[session.source] = FetchState.IDLE

    def _claim(self, session_id: int) -> Optional[FetchSession]:
        # Liveness first: a completion can race past cancellation after teardown.
        if not self._alive:
            return None
        for session in self._sessions.values():
            if session.session_id == session_id:
                if session.in_progress and not session.cancelled:
                    session.in_progress = False
                    return session
                break
        self._debug(f'Dropped stale fetch completion #{session_id}')
        return None

    def _finish(self, session: FetchSession, outcome: FetchState) -> None:
        self._outcomes[session.source] = outcome
        self._states[session.source] = FetchState.IDLE

    @pyqtSlot(int, object)
    def _on_worker_succeeded(self, session_id: int, data: object) -> None:
        session = self._claim(session_id)
        if session is None:
            return
        self._finish(session, FetchState.SUCCEEDED)
        self.succeeded.emit(session.source.value, session.kind.value, data)
        self.loading_changed.emit(session.source.value, session.kind.value, False)

    @pyqtSlot(int)
    def _on_worker_empty(self, session_id: int) -> None:
        session = self._claim(session_id)
        if session is None:
            return
        self._finish(session, FetchState.SUCCEEDED)
        self.empty.emit(session.source.value, session.kind.value)
        self.loading_changed.emit(session.source.value, session.kind.value, False)

    @pyqtSlot(int, str)
    def _on_worker_failed(self, session_id: int, message: str) -> None:
        session = self._claim(session_id)
        if session is None:
            return
        self._finish(session, FetchState.FAILED)
        self.failed.emit(session.source.value, session.kind.value, message)
        self.loading_changed.emit(session.source.value, session.kind.value, False)

    @pyqtSlot(int)
    def _on_worker_cancelled(self, session_id: int) -> None:
        # Cancellation is silent: no loading flag, no data.
        self._debug(f'Fetch #{session_id} cancelled')

    @pyqtSlot()
    def _on_worker_finished(self) -> None:
        worker = self.sender()
        if not isinstance(worker, FetchWorker):
            return
        worker.wait()
        self._workers.pop(worker.session.session_id, None)

    def _debug(self, message: str) -> None:
        if self.debug_sink is not None:
            try:
                self.debug_sink(message)
            except Exception:
                pass


class RefreshPoller(QObject):
    """Fixed-interval refresh trigger with an optional attempt ceiling and one teardown path."""

    tick = pyqtSignal(int)
    exhausted = pyqtSignal()

    def __init__(self, interval_ms: int = 4000, max_attempts: Optional[int] = None, parent: Optional[QObject] = None) -> None:
        super().__init__(parent)
        self.interval_ms = interval_ms
        self.max_attempts = max_attempts
        self.attempts = 0
        self._timer = QTimer(self)
        self._timer.setInterval(interval_ms)
        self._timer.timeout.connect(self._on_timeout)

    def start(self) -> None:
        self.attempts = 0
        self._timer.start()

    def stop(self) -> None:
        self._timer.stop()

    def is_active(self) -> bool:
        return self._timer.isActive()

    def _on_timeout(self) -> None:
        if self.max_attempts is not None and self.attempts >= self.max_attempts:
            self.stop()
            return
        self.attempts += 1
        self.tick.emit(self.attempts)
        if self.max_attempts is not None and self.attempts >= self.max_attempts:
            self.stop()
            self.exhausted.emit()
