import argparse

import uvicorn


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Classroom attendance REST backend")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface")
    parser.add_argument("--port", type=int, default=4000, help="Port")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    return parser


def main() -> int:
    args = build_parser().parse_args()
    uvicorn.run("attendance_backend.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
