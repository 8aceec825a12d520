from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Fleet Capacity Controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default=os.getenv("FCC_ADMIN_USER"), help="Operator user (or FCC_ADMIN_USER)")
    p.add_argument(
        "--password", default=os.getenv("FCC_ADMIN_PASSWORD"), help="Operator password (or FCC_ADMIN_PASSWORD)"
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("status", help="Show capacity spec, members and routing table")
    sub.add_parser("versions", help="List recorded capacity spec versions")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_scale = sub.add_parser("scale", help="Set desired capacity")
    s_scale.add_argument("--desired", type=int, required=True)
    s_scale.add_argument("--min", dest="min_size", type=int)
    s_scale.add_argument("--max", dest="max_size", type=int)
    s_scale.add_argument("--image", help="Rotate members to this image")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password) if args.user and args.password else None

    if args.cmd == "status":
        r = requests.get(f"{base}/_fleet/status", auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "versions":
        r = requests.get(f"{base}/_fleet/versions", auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        r = requests.get(f"{base}/_fleet/events", params={"limit": args.limit}, auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "scale":
        payload = {"desired": args.desired}
        if args.min_size is not None:
            payload["min_size"] = args.min_size
        if args.max_size is not None:
            payload["max_size"] = args.max_size
        if args.image:
            payload["image"] = args.image
        r = requests.put(f"{base}/_fleet/capacity", json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
