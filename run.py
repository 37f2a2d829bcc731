"""
Start the ticketflow API under uvicorn.

Usage:
    python run.py
    python run.py --reload            # auto-reload while developing
    python run.py --no-scheduler      # serve the API without background sweeps
"""
import argparse
import os

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Ticketflow workflow engine API")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Worker processes; ignored with --reload. Each worker runs its own scheduler "
             "unless --no-scheduler is given",
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Disable automatic transitions and SLA sweeps in this process",
    )
    args = parser.parse_args()

    if args.no_scheduler:
        # Read by Settings when the app module is imported
        os.environ["SCHEDULER_ENABLED"] = "false"

    workers = 1 if args.reload else args.workers
    print(f"ticketflow on http://{args.host}:{args.port} "
          f"(workers={workers}, reload={args.reload}, scheduler={not args.no_scheduler})")

    uvicorn.run(
        "ticketflow.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=workers,
    )


if __name__ == "__main__":
    main()
