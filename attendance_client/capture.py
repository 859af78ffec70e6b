from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Callable

from .camera import CameraStream
from .config import ClientConfig
from .debounce import DailyMarks, DetectionDebouncer, best_per_label
from .embedder import EmbeddingProvider, FaceDescriptor
from .exceptions import AttendanceError, CameraError, EmbeddingProviderError
from .logger import setup_logger
from .matcher import FaceMatcher, MatchResult, ReferenceSet
from .records import DetectionEvent, Identity, ResolvedIdentity
from .sync import SUBMIT_ALREADY_MARKED, SUBMIT_MARKED, SUBMIT_QUEUED, AttendanceSyncService, SubmitOutcome

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_ERROR = "error"


@dataclass
class ScanReport:
    faces: int = 0
    matches: list[MatchResult] = field(default_factory=list)
    events: list[DetectionEvent] = field(default_factory=list)
    already_marked: list[str] = field(default_factory=list)
    message: str = ""
    stale: bool = False
    error: str | None = None


class CaptureSession:
    """Everything owned by one RUNNING period; discarded on stop."""

    def __init__(self, camera: CameraStream, matcher: FaceMatcher, debouncer: DetectionDebouncer) -> None:
        self.id = uuid.uuid4().hex
        self.camera = camera
        self.matcher = matcher
        self.debouncer = debouncer
        self.marked = DailyMarks()
        self.stop_event = threading.Event()
        self.started_at = time.time()

    @property
    def active(self) -> bool:
        return not self.stop_event.is_set()

    def close(self) -> None:
        self.stop_event.set()
        self.camera.close()
        self.debouncer.reset()
        self.marked.clear()


def rank_faces(faces: list[FaceDescriptor], limit: int) -> list[FaceDescriptor]:
    ordered = sorted(faces, key=lambda face: (face.score, face.area), reverse=True)
    return ordered[: max(0, limit)]


class CaptureLoop:
    """Camera -> descriptors -> matcher -> debounce -> attendance delivery.

    States: ``idle -> running -> idle`` on stop, ``running -> error -> idle``
    when the camera or the face model fails mid-session. Scan steps run on a
    fixed interval and a step is skipped while the previous one is in flight.
    """

    def __init__(
        self,
        cfg: ClientConfig,
        provider: EmbeddingProvider,
        reference_loader: Callable[[], ReferenceSet],
        sync: AttendanceSyncService | None = None,
        camera_factory: Callable[[], CameraStream] | None = None,
        on_status: Callable[[str], None] | None = None,
        on_outcome: Callable[[SubmitOutcome], None] | None = None,
        executor: Executor | None = None,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.cfg = cfg
        self.provider = provider
        self.reference_loader = reference_loader
        self.sync = sync
        self.camera_factory = camera_factory or (lambda: CameraStream(cfg.camera_index))
        self.on_status = on_status
        self.on_outcome = on_outcome
        self.clock = clock
        self.today = today
        self.logger = setup_logger(self.__class__.__name__)

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="attendance-sync")
        self._state = STATE_IDLE
        self._state_lock = threading.Lock()
        self._scan_lock = threading.RLock()
        self._session: CaptureSession | None = None
        self._thread: threading.Thread | None = None
        self.skipped_scans = 0
        self.last_error: str | None = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    def _report(self, message: str) -> None:
        self.logger.info(message)
        if self.on_status is not None:
            self.on_status(message)

    def start(self, run_timer: bool = True) -> bool:
        with self._state_lock:
            if self._state == STATE_RUNNING:
                return True

            camera: CameraStream | None = None
            try:
                camera = self.camera_factory()
                camera.open()
                self.provider.ensure_ready()
                reference = self.reference_loader()
            except AttendanceError as exc:
                if camera is not None:
                    camera.close()
                self.last_error = str(exc)
                self._state = STATE_IDLE
                self.logger.error("Capture start failed: %s", exc)
                self._report(f"Start failed: {exc}")
                return False

            matcher = FaceMatcher(reference, threshold=self.cfg.match_threshold)
            session = CaptureSession(camera, matcher, DetectionDebouncer(self.cfg.cooldown_seconds))
            self._session = session
            self._state = STATE_RUNNING
            self.last_error = None

            if run_timer:
                self._thread = threading.Thread(
                    target=self._run,
                    args=(session,),
                    daemon=True,
                    name="capture-loop",
                )
                self._thread.start()

        if reference.is_empty():
            self._report("Camera started. No reference data: enrollment pending, matching disabled.")
        else:
            self._report(f"Camera started. Face matcher ready ({len(reference)} labels).")
        return True

    def _run(self, session: CaptureSession) -> None:
        interval = max(0.05, float(self.cfg.scan_interval_seconds))
        while not session.stop_event.wait(interval):
            if self._session is not session:
                break
            self.tick()

    def tick(self) -> ScanReport | None:
        """Run one scan step, or return None when idle or a step is in flight."""
        session = self._session
        if session is None or self._state != STATE_RUNNING:
            return None
        if not self._scan_lock.acquire(blocking=False):
            self.skipped_scans += 1
            return None
        try:
            return self._scan(session)
        finally:
            self._scan_lock.release()

    def _is_current(self, session: CaptureSession) -> bool:
        return self._session is session and session.active

    def _scan(self, session: CaptureSession) -> ScanReport:
        try:
            frame = session.camera.read()
            faces = self.provider.detect(frame)
        except (CameraError, EmbeddingProviderError) as exc:
            self._fail(session, exc)
            return ScanReport(error=str(exc), message=f"Capture error: {exc}")

        if not self._is_current(session):
            return ScanReport(stale=True)

        faces = rank_faces(faces, self.cfg.max_faces)
        report = ScanReport(faces=len(faces))
        if not faces:
            report.message = "Detected faces: 0"
            return report

        matcher = session.matcher
        if matcher.reference_set.is_empty():
            report.message = f"Detected faces: {len(faces)}, no reference data (enrollment pending)"
            return report

        report.matches = [matcher.match(face.vector) for face in faces]
        confident = best_per_label(report.matches)
        if not confident:
            report.message = "No confident match for detected faces."
            return report

        now = self.clock()
        day = self.today()
        for result in confident:
            if not self._is_current(session):
                report.stale = True
                report.events.clear()
                return report
            identity = matcher.reference_set.resolve(result.label)
            if isinstance(identity, ResolvedIdentity) and session.marked.contains(identity.student_id, day):
                report.already_marked.append(result.label)
                continue
            if not session.debouncer.should_emit(result.label, now):
                continue
            event = DetectionEvent(result.label, result.distance, now)
            report.events.append(event)
            self._deliver(session, identity, event, day)

        report.message = f"Detected faces: {len(faces)}, matched: {len(confident)}, emitted: {len(report.events)}"
        return report

    def _deliver(self, session: CaptureSession, identity: Identity, event: DetectionEvent, day: date) -> None:
        self._report(f"Match: {event.label} (d={event.distance:.3f})")
        if self.sync is None:
            return
        self._executor.submit(self._submit, session, identity, event, day)

    def _submit(self, session: CaptureSession, identity: Identity, event: DetectionEvent, day: date) -> None:
        if not self._is_current(session):
            self.logger.info("Dropping stale detection for %s after stop", event.label)
            return
        try:
            outcome = self.sync.submit_detection(identity, event.distance, day)
        except AttendanceError as exc:
            self.logger.error("Attendance delivery for %s failed: %s", event.label, exc)
            self._report(f"Attendance delivery failed for {event.label}: {exc}")
            return
        except Exception as exc:
            # Runs on the executor; nothing reads the future, so log here.
            self.logger.exception("Unexpected error delivering attendance for %s", event.label)
            self._report(f"Attendance delivery failed for {event.label}: {exc!r}")
            return

        record = outcome.record
        if (
            outcome.status in (SUBMIT_MARKED, SUBMIT_ALREADY_MARKED, SUBMIT_QUEUED)
            and record is not None
            and record.student_id is not None
        ):
            session.marked.add(record.student_id, record.date)
        self._report(f"{event.label}: {outcome.message}")
        if self.on_outcome is not None:
            self.on_outcome(outcome)

    def _fail(self, session: CaptureSession, exc: Exception) -> None:
        with self._state_lock:
            if self._session is not session:
                return
            self._state = STATE_ERROR
            self._session = None
            self._thread = None
        self.last_error = str(exc)
        self.logger.error("Capture loop error: %s", exc)
        self._report(f"Capture error: {exc}")
        with self._scan_lock:
            session.close()
        with self._state_lock:
            if self._session is None:
                self._state = STATE_IDLE

    def reload_references(self) -> int:
        """Rebuild the reference set of the running session, e.g. after enrollment."""
        session = self._session
        if session is None:
            return 0
        reference = self.reference_loader()
        if self._session is session:
            session.matcher = FaceMatcher(reference, threshold=self.cfg.match_threshold)
            self._report(f"Reference set reloaded ({len(reference)} labels).")
        return len(reference)

    def stop(self) -> None:
        with self._state_lock:
            session = self._session
            thread = self._thread
            self._session = None
            self._thread = None
            if session is None:
                self._state = STATE_IDLE
                return
            session.stop_event.set()

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(2.0, self.cfg.scan_interval_seconds * 4))
        with self._scan_lock:
            session.close()
        with self._state_lock:
            if self._session is None:
                self._state = STATE_IDLE
        self._report("Camera stopped")

    def close(self) -> None:
        self.stop()
        if self._owns_executor:
            self._executor.shutdown(wait=True)
