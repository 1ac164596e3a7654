#!/usr/bin/env python3
"""
authgate -- credential and session management service.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8000 --reload
  python main.py sweep

Commands:
  serve   Run the HTTP API under uvicorn (same as `uvicorn api.main:app`).
  sweep   Delete expired sessions and purpose tokens once and exit. The API
          also does this on a timer; this is for cron jobs
          when the API runs with more than one worker.

Configuration comes from the environment / .env (see core/config.py).
"""

import argparse

import uvicorn


def _serve(args: argparse.Namespace) -> None:
    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload, proxy_headers=True)


def _sweep(_args: argparse.Namespace) -> None:
    from fastapi import FastAPI

    from api.main import build_components, sweep_expired
    from core.config import get_settings
    from core.database import Database

    settings = get_settings()
    db = Database(settings.database_url)
    db.connect()
    holder = FastAPI()
    try:
        build_components(holder, settings, db)
        removed = sweep_expired(holder)
    finally:
        if holder.state.dispatcher is not None:
            holder.state.dispatcher.shutdown(wait=False)
        db.close()
    print(f"Removed {removed['sessions']} session(s), {removed['tokens']} token(s).")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="authgate -- credential and session management service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=5000, help="Port (default: 5000)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    serve.set_defaults(func=_serve)

    sweep = sub.add_parser("sweep", help="Purge expired sessions and tokens")
    sweep.set_defaults(func=_sweep)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
