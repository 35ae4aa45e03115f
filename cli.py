from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from dataclasses import replace

import requests

from nodecap import db
from nodecap.capacity import get_resources
from nodecap.isolation import available_kinds, registered_kinds
from nodecap.resources import ConfigParseError
from nodecap.settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="nodecap CLI")
    p.add_argument("--api", default="http://localhost:5051", help="Agent API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_res = sub.add_parser("resources", help="Resolve the capacity this host would advertise")
    s_res.add_argument("--resources", default=settings.resources, help='Overrides, e.g. "cpus:2;mem:4096"')
    s_res.add_argument("--default-role", default=settings.default_role)
    s_res.add_argument("--work-dir", default=settings.work_dir)

    sub.add_parser("isolators", help="List isolation backends")

    sub.add_parser("state", help="Show a running agent's advertised state")

    s_ev = sub.add_parser("events", help="Show a running agent's events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    if args.cmd == "resources":
        db.init_db()
        cfg = replace(settings, resources=args.resources, default_role=args.default_role, work_dir=args.work_dir)
        # Same as agent startup: the disk probe measures the work dir's filesystem.
        os.makedirs(cfg.work_dir, exist_ok=True)
        try:
            resources = asyncio.run(get_resources(cfg))
        except ConfigParseError as e:
            print(f"Invalid resources: {e}", file=sys.stderr)
            return 1
        _print(resources.to_records())
        return 0

    if args.cmd == "isolators":
        _print({"registered": registered_kinds(), "available": available_kinds()})
        return 0

    base = args.api.rstrip("/")

    if args.cmd == "state":
        r = requests.get(f"{base}/state", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
