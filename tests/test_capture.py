import threading
import time
from concurrent.futures import Future
from datetime import date, timedelta

import numpy as np
import pytest

from attendance_client.api_client import AttendanceApiClient
from attendance_client.capture import STATE_IDLE, STATE_RUNNING, CaptureLoop, rank_faces
from attendance_client.embedder import FaceDescriptor
from attendance_client.exceptions import CameraError, EmbeddingProviderError, SyncError
from attendance_client.matcher import ReferenceSet
from attendance_client.offline_queue import OfflineAttendanceQueue
from attendance_client.records import ResolvedIdentity, UnresolvedIdentity
from attendance_client.sync import SUBMIT_MARKED, AttendanceSyncService, SubmitOutcome


def _unit(index: int) -> np.ndarray:
    vector = np.zeros(128, dtype=np.float32)
    vector[index] = 1.0
    return vector


def _face(index: int, score: float = 0.9, size: float = 100.0) -> FaceDescriptor:
    return FaceDescriptor(vector=_unit(index), bbox=(0.0, 0.0, size, size), score=score)


REFERENCES = [
    {"student_id": 1, "roll": "A-1", "embedding": _unit(0).tolist()},
    {"student_id": 2, "roll": "B-2", "embedding": _unit(1).tolist()},
    {"student_id": None, "roll": "guest", "embedding": _unit(2).tolist()},
]


class FakeCamera:
    def __init__(self, fail_open=False):
        self.fail_open = fail_open
        self.fail_read = False
        self.opened = False
        self.close_calls = 0

    def open(self):
        if self.fail_open:
            raise CameraError("permission denied")
        self.opened = True

    def read(self):
        if self.fail_read:
            raise CameraError("device unplugged")
        return "frame"

    def close(self):
        self.opened = False
        self.close_calls += 1


class FakeProvider:
    def __init__(self, faces=None):
        self.faces = faces or []
        self.ready_error = None
        self.calls = 0
        self.on_detect = None

    def ensure_ready(self):
        if self.ready_error is not None:
            raise self.ready_error

    def detect(self, frame):
        self.calls += 1
        if self.on_detect is not None:
            self.on_detect()
        return list(self.faces)


class RecordingSync:
    def __init__(self):
        self.submitted = []

    def submit_detection(self, identity, distance, day=None):
        self.submitted.append((identity, distance))
        return SubmitOutcome(SUBMIT_MARKED, record=None, message="Attendance marked.")


class InlineExecutor:
    def submit(self, fn, *args, **kwargs):
        future = Future()
        future.set_result(fn(*args, **kwargs))
        return future

    def shutdown(self, wait=True):
        pass


class DeferredExecutor(InlineExecutor):
    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        self.pending.append((fn, args, kwargs))
        return Future()

    def run_pending(self):
        for fn, args, kwargs in self.pending:
            fn(*args, **kwargs)
        self.pending.clear()


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def camera():
    return FakeCamera()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def recorder():
    return RecordingSync()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_loop(client_config, camera, provider, recorder, clock):
    client_config.cooldown_seconds = 45
    client_config.max_faces = 10

    def _make(references=REFERENCES, executor=None, **kwargs):
        return CaptureLoop(
            client_config,
            provider=provider,
            reference_loader=lambda: ReferenceSet.from_embeddings(references),
            sync=recorder,
            camera_factory=lambda: camera,
            executor=executor or InlineExecutor(),
            clock=clock,
            **kwargs,
        )

    return _make


def test_start_failure_releases_camera(client_config, provider):
    broken = FakeCamera(fail_open=True)
    loop = CaptureLoop(client_config, provider, ReferenceSet.empty, camera_factory=lambda: broken)
    assert loop.start(run_timer=False) is False
    assert loop.state == STATE_IDLE
    assert "permission denied" in loop.last_error
    assert broken.close_calls == 1
    loop.close()


def test_model_failure_on_start_releases_camera(make_loop, camera, provider):
    provider.ready_error = EmbeddingProviderError("model missing")
    loop = make_loop()
    assert loop.start(run_timer=False) is False
    assert camera.close_calls == 1
    assert loop.session is None


def test_reference_fetch_failure_on_start(client_config, camera, provider):
    def loader():
        raise SyncError("server unreachable")

    loop = CaptureLoop(client_config, provider, loader, camera_factory=lambda: camera, executor=InlineExecutor())
    assert loop.start(run_timer=False) is False
    assert camera.close_calls == 1
    assert loop.state == STATE_IDLE


def test_detection_is_debounced_per_label(make_loop, provider, recorder, clock):
    provider.faces = [_face(0)]
    loop = make_loop()
    assert loop.start(run_timer=False)
    assert loop.state == STATE_RUNNING

    first = loop.tick()
    assert [event.label for event in first.events] == ["A-1"]
    assert recorder.submitted == [(ResolvedIdentity(1), pytest.approx(0.0))]

    clock.now += 10
    assert loop.tick().events == []

    provider.faces = [_face(0), _face(1)]
    assert [event.label for event in loop.tick().events] == ["B-2"]

    clock.now += 45
    assert len(loop.tick().events) == 2
    assert len(recorder.submitted) == 4
    loop.close()


def test_best_match_per_label_only(make_loop, provider, recorder):
    near = FaceDescriptor(vector=_unit(0), bbox=(0, 0, 50, 50), score=0.8)
    noisy = _unit(0).copy()
    noisy[5] = 0.3
    provider.faces = [FaceDescriptor(vector=noisy, bbox=(0, 0, 90, 90), score=0.95), near]
    loop = make_loop()
    loop.start(run_timer=False)

    report = loop.tick()
    assert report.faces == 2
    assert len(report.events) == 1
    assert recorder.submitted[0][1] == pytest.approx(0.0)
    loop.close()


def test_unknown_and_unresolved_faces(make_loop, provider, recorder):
    provider.faces = [_face(2), _face(40)]
    loop = make_loop()
    loop.start(run_timer=False)

    report = loop.tick()
    assert [result.outcome for result in report.matches] == ["matched", "unknown"]
    assert recorder.submitted == [(UnresolvedIdentity("guest"), pytest.approx(0.0))]
    loop.close()


def test_max_faces_keeps_most_confident(make_loop, client_config, provider, recorder):
    client_config.max_faces = 1
    provider.faces = [_face(1, score=0.6), _face(0, score=0.99)]
    loop = make_loop()
    loop.start(run_timer=False)

    report = loop.tick()
    assert report.faces == 1
    assert recorder.submitted[0][0] == ResolvedIdentity(1)
    loop.close()


def test_rank_faces_orders_by_score_then_area():
    faces = [_face(0, score=0.5, size=300), _face(1, score=0.9, size=10), _face(2, score=0.9, size=50)]
    ranked = rank_faces(faces, 2)
    assert [int(np.argmax(face.vector)) for face in ranked] == [2, 1]
    assert rank_faces(faces, 0) == []


def test_no_reference_data_disables_matching(make_loop, provider, recorder):
    statuses = []
    provider.faces = [_face(0)]
    loop = make_loop(references=[], on_status=statuses.append)
    assert loop.start(run_timer=False)
    assert any("No reference data" in message for message in statuses)

    report = loop.tick()
    assert report.faces == 1
    assert "no reference data" in report.message
    assert report.matches == []
    assert recorder.submitted == []
    loop.close()


def test_no_faces_in_frame(make_loop):
    loop = make_loop()
    loop.start(run_timer=False)
    assert loop.tick().message == "Detected faces: 0"
    loop.close()


def test_stop_is_idempotent_and_releases_camera(make_loop, camera):
    loop = make_loop()
    loop.start(run_timer=False)
    loop.stop()
    loop.stop()
    assert loop.state == STATE_IDLE
    assert camera.close_calls == 1
    assert loop.tick() is None


def test_restart_uses_a_fresh_session(make_loop, provider, recorder):
    provider.faces = [_face(0)]
    loop = make_loop()
    loop.start(run_timer=False)
    first_session = loop.session.id
    loop.tick()
    loop.stop()

    loop.start(run_timer=False)
    assert loop.session.id != first_session
    assert len(loop.tick().events) == 1
    assert len(recorder.submitted) == 2
    loop.close()


def test_camera_error_mid_run_returns_to_idle(make_loop, camera):
    statuses = []
    loop = make_loop(on_status=statuses.append)
    loop.start(run_timer=False)

    camera.fail_read = True
    report = loop.tick()
    assert "device unplugged" in report.error
    assert loop.state == STATE_IDLE
    assert loop.session is None
    assert loop.last_error == "device unplugged"
    assert camera.close_calls == 1
    assert any("Capture error" in message for message in statuses)


def test_stop_during_detection_discards_results(make_loop, provider, recorder):
    provider.faces = [_face(0)]
    loop = make_loop()
    loop.start(run_timer=False)
    provider.on_detect = loop.stop

    report = loop.tick()
    assert report.stale is True
    assert report.events == []
    assert recorder.submitted == []
    assert loop.state == STATE_IDLE


def test_delivery_after_stop_is_dropped(make_loop, provider, recorder):
    executor = DeferredExecutor()
    provider.faces = [_face(0)]
    loop = make_loop(executor=executor)
    loop.start(run_timer=False)

    assert len(loop.tick().events) == 1
    loop.stop()
    executor.run_pending()
    assert recorder.submitted == []


def test_tick_is_skipped_while_previous_scan_runs(make_loop, provider):
    entered = threading.Event()
    release = threading.Event()

    def block():
        entered.set()
        release.wait(timeout=5)

    provider.on_detect = block
    loop = make_loop()
    loop.start(run_timer=False)

    worker = threading.Thread(target=loop.tick)
    worker.start()
    assert entered.wait(timeout=5)

    assert loop.tick() is None
    assert loop.skipped_scans == 1

    release.set()
    worker.join(timeout=5)
    assert provider.calls == 1
    loop.close()


def test_reload_references_picks_up_new_enrollment(client_config, camera, provider, recorder, clock):
    references = []
    loop = CaptureLoop(
        client_config,
        provider,
        lambda: ReferenceSet.from_embeddings(references),
        sync=recorder,
        camera_factory=lambda: camera,
        executor=InlineExecutor(),
        clock=clock,
    )
    provider.faces = [_face(0)]
    loop.start(run_timer=False)
    assert loop.tick().matches == []

    references.append(REFERENCES[0])
    assert loop.reload_references() == 1
    assert len(loop.tick().events) == 1
    assert recorder.submitted[0][0] == ResolvedIdentity(1)
    loop.close()


def test_timer_drives_scans_until_stopped(make_loop, client_config, provider):
    client_config.scan_interval_seconds = 0.05
    loop = make_loop()
    assert loop.start()

    deadline = time.monotonic() + 5
    while provider.calls < 3 and time.monotonic() < deadline:
        time.sleep(0.02)
    assert provider.calls >= 3

    loop.stop()
    calls = provider.calls
    time.sleep(0.2)
    assert provider.calls == calls
    assert loop.state == STATE_IDLE


class Calendar:
    def __init__(self, day):
        self.day = day

    def __call__(self):
        return self.day


@pytest.fixture
def live_loop(client_config, transport, camera, provider, clock):
    api = AttendanceApiClient(client_config, session=transport)
    sync = AttendanceSyncService(api, OfflineAttendanceQueue(client_config.queue_db_path))
    calendar = Calendar(date(2024, 3, 1))
    outcomes = []
    loop = CaptureLoop(
        client_config,
        provider,
        lambda: ReferenceSet.from_embeddings(REFERENCES),
        sync=sync,
        camera_factory=lambda: camera,
        on_outcome=outcomes.append,
        executor=InlineExecutor(),
        clock=clock,
        today=calendar,
    )
    yield loop, calendar, outcomes
    loop.close()


def _mark_posts(transport):
    return [url for method, url in transport.calls if url.endswith("/attendance/mark")]


def test_student_in_view_is_posted_once_per_day(live_loop, transport, provider, clock, add_student):
    loop, _calendar, outcomes = live_loop
    add_student(1)
    provider.faces = [_face(0)]
    loop.start(run_timer=False)

    for _ in range(80):
        loop.tick()
        clock.now += 45

    assert len(_mark_posts(transport)) == 1
    assert [outcome.status for outcome in outcomes] == ["marked"]


def test_next_calendar_day_is_not_blocked(live_loop, transport, provider, clock, add_student):
    loop, calendar, outcomes = live_loop
    add_student(1)
    provider.faces = [_face(0)]
    loop.start(run_timer=False)

    loop.tick()
    clock.now += 45
    assert loop.tick().already_marked == ["A-1"]

    calendar.day += timedelta(days=1)
    loop.tick()
    assert len(_mark_posts(transport)) == 2
    assert [outcome.status for outcome in outcomes] == ["marked", "marked"]


def test_already_marked_on_server_stops_reposting(live_loop, client, transport, provider, clock, add_student):
    loop, _calendar, outcomes = live_loop
    add_student(1)
    client.post("/api/v1/attendance/mark", json={"student_id": 1, "date": "2024-03-01"})
    provider.faces = [_face(0)]
    loop.start(run_timer=False)

    for _ in range(5):
        loop.tick()
        clock.now += 60

    assert len(_mark_posts(transport)) == 1
    assert [outcome.status for outcome in outcomes] == ["already_marked"]


def test_queued_offline_mark_is_not_queued_again(live_loop, transport, provider, clock, add_student):
    loop, _calendar, outcomes = live_loop
    add_student(1)
    transport.online = False
    provider.faces = [_face(0)]
    loop.start(run_timer=False)

    for _ in range(5):
        loop.tick()
        clock.now += 60

    assert [outcome.status for outcome in outcomes] == ["queued"]
    assert loop.sync.queue.size() == 1


def test_unexpected_delivery_error_is_reported(make_loop, provider, recorder):
    statuses = []

    def explode(identity, distance, day=None):
        raise KeyError("access_token")

    recorder.submit_detection = explode
    provider.faces = [_face(0)]
    loop = make_loop(on_status=statuses.append)
    loop.start(run_timer=False)

    report = loop.tick()
    assert len(report.events) == 1
    assert any("delivery failed for A-1" in message for message in statuses)
    assert loop.state == STATE_RUNNING
    loop.close()
