import argparse
import time
from datetime import date

from .api_client import AttendanceApiClient
from .camera import CameraStream
from .capture import STATE_RUNNING, CaptureLoop, rank_faces
from .config import ClientConfig
from .embedder import ArcFaceEmbedder
from .exceptions import AttendanceError
from .logger import setup_logger
from .matcher import ReferenceSet
from .offline_queue import OfflineAttendanceQueue
from .sync import AttendanceSyncService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Classroom attendance camera client")
    parser.add_argument("--api", default=None, help="Backend base URL (overrides API_BASE_URL)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Run live face scanning and mark attendance")
    scan.add_argument("--camera", type=int, default=None, help="Camera index")
    scan.add_argument("--threshold", type=float, default=None, help="Euclidean distance threshold")
    scan.add_argument("--interval", type=float, default=None, help="Seconds between scan steps")
    scan.add_argument("--duration", type=float, default=0, help="Stop after N seconds (0 = until Ctrl+C)")

    subparsers.add_parser("flush", help="Send queued offline records to the server")
    subparsers.add_parser("queue", help="Show offline queue status")

    reconcile = subparsers.add_parser("reconcile", help="Map an unresolved label to a student id")
    reconcile.add_argument("--label", required=True, help="Label recorded by the scanner")
    reconcile.add_argument("--student-id", type=int, required=True, help="Student id to attach")

    session = subparsers.add_parser("session", help="Submit a manual class session in one batch")
    session.add_argument("student_ids", type=int, nargs="+", help="Student ids marked in the session")
    session.add_argument("--date", type=date.fromisoformat, default=None, help="Session date (YYYY-MM-DD)")
    session.add_argument("--status", default="present", choices=("present", "absent", "late"))

    register = subparsers.add_parser("register", help="Enroll a face descriptor from the camera")
    register.add_argument("--student-id", type=int, required=True, help="Student id")
    register.add_argument("--camera", type=int, default=None, help="Camera index")
    register.add_argument("--attempts", type=int, default=50, help="Frames to try before giving up")
    return parser


def _build_services(cfg: ClientConfig):
    api = AttendanceApiClient(cfg)
    queue = OfflineAttendanceQueue(cfg.queue_db_path)
    sync = AttendanceSyncService(api, queue, flush_batch=cfg.queue_flush_batch)
    return api, queue, sync


def run_scan(cfg: ClientConfig, duration: float) -> int:
    logger = setup_logger("attendance_client")
    api, queue, sync = _build_services(cfg)

    flushed = sync.flush_all()
    if flushed.sent:
        logger.info("Startup flush: sent=%d inserted=%d remaining=%d", flushed.sent, flushed.inserted, flushed.remaining)

    loop = CaptureLoop(
        cfg,
        provider=ArcFaceEmbedder(),
        reference_loader=lambda: ReferenceSet.from_embeddings(api.fetch_embeddings()),
        sync=sync,
    )
    if not loop.start():
        logger.error("Scanner could not start: %s", loop.last_error)
        return 1

    started = time.monotonic()
    try:
        while loop.state == STATE_RUNNING:
            if duration and time.monotonic() - started >= duration:
                break
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()

    logger.info("Scanner stopped. Offline queue: %s", queue.counts())
    return 0 if loop.last_error is None else 1


def run_register(cfg: ClientConfig, student_id: int, attempts: int) -> int:
    logger = setup_logger("attendance_client")
    api = AttendanceApiClient(cfg)
    provider = ArcFaceEmbedder()
    try:
        provider.ensure_ready()
        with CameraStream(cfg.camera_index) as cam:
            logger.info("Camera %d opened at %dx%d", cfg.camera_index, *cam.frame_size)
            for _ in range(max(1, attempts)):
                faces = rank_faces(provider.detect(cam.read()), 1)
                if faces:
                    api.register_face(student_id, faces[0].vector.tolist())
                    logger.info("Registered face for student %s. Restart or reload the scanner to use it.", student_id)
                    return 0
    except AttendanceError as exc:
        logger.error("Registration failed: %s", exc)
        return 1
    logger.error("No face found after %d frames.", attempts)
    return 1


def main() -> int:
    args = build_parser().parse_args()
    cfg = ClientConfig()
    if args.api:
        cfg.api_base_url = args.api
    if getattr(args, "camera", None) is not None:
        cfg.camera_index = args.camera

    if args.command == "scan":
        if args.threshold is not None:
            cfg.match_threshold = args.threshold
        if args.interval is not None:
            cfg.scan_interval_seconds = args.interval
        return run_scan(cfg, args.duration)

    if args.command == "register":
        return run_register(cfg, args.student_id, args.attempts)

    logger = setup_logger("attendance_client")
    _api, queue, sync = _build_services(cfg)
    if args.command == "flush":
        report = sync.flush_all()
        logger.info(
            "Flush: sent=%d inserted=%d duplicates=%d rejected=%d remaining=%d",
            report.sent,
            report.inserted,
            report.duplicates,
            report.rejected,
            report.remaining,
        )
        return 0 if report.error is None else 1
    if args.command == "queue":
        counts = queue.counts()
        logger.info("Queued: %d resolved, %d unresolved", counts["resolved"], counts["unresolved"])
        for item in queue.pending_unresolved():
            logger.info("  #%d label=%s date=%s", item.id, item.record.label, item.record.date)
        return 0
    if args.command == "reconcile":
        count = sync.reconcile(args.label, args.student_id)
        logger.info("Attached student %s to %d queued records", args.student_id, count)
        return 0
    if args.command == "session":
        report = sync.submit_session(args.student_ids, day=args.date, status=args.status)
        logger.info(
            "Session: submitted=%d inserted=%d duplicates=%d queued=%d",
            report.submitted,
            report.inserted,
            report.duplicates,
            report.queued,
        )
        return 0 if report.error is None else 1
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
