from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys

import requests

from .output import render_routes, write_routes
from .settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _once(output: str | None) -> int:
    from .reconciler import reconciler_from_settings

    s = dataclasses.replace(settings, output_file=output or settings.output_file)
    rec = reconciler_from_settings(s)
    config = rec.run_cycle()
    rec.channel.get_nowait()

    if s.output_file:
        write_routes(s.output_file, config, environment=s.environment)
        print(f"Routes file generated at {s.output_file}", file=sys.stderr)
    else:
        sys.stdout.write(render_routes(config, s.environment))
    http = config.http
    print(
        f"Summary: routers={len(http.routers)} services={len(http.services)} middlewares={len(http.middlewares)}",
        file=sys.stderr,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Cloud Route Provider CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--log-level", default=settings.log_level)
    sub = p.add_subparsers(dest="cmd", required=True)

    s_once = sub.add_parser("once", help="Run one reconcile cycle and print (or write) the routes YAML")
    s_once.add_argument("--output", help="Write to this file instead of stdout")

    s_serve = sub.add_parser("serve", help="Run the reconciler behind the HTTP provider endpoint")
    s_serve.add_argument("--host", default="0.0.0.0")
    s_serve.add_argument("--port", type=int, default=8000)

    sub.add_parser("config", help="Show the configuration currently served by the API")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)
    _setup_logging(args.log_level)

    base = args.api.rstrip("/")

    if args.cmd == "once":
        return _once(args.output)

    if args.cmd == "serve":
        import uvicorn

        uvicorn.run("crp.api:app", host=args.host, port=args.port, log_level=args.log_level.lower())
        return 0

    if args.cmd == "config":
        r = requests.get(f"{base}/api/config", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
