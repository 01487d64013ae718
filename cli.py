from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _show(r: requests.Response) -> int:
    try:
        _print(r.json())
    except ValueError:
        print(r.text)
    return 0 if r.ok else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Continuous Deployment Reconciler CLI")
    p.add_argument("--api", default=os.getenv("CDR_API", "http://localhost:8000"), help="API base URL")
    p.add_argument("--user", default=os.getenv("CDR_ADMIN_USER", "admin"))
    p.add_argument("--password", default=os.getenv("CDR_ADMIN_PASSWORD", "change-me"))
    sub = p.add_subparsers(dest="cmd", required=True)

    s_prop = sub.add_parser("propose", help="Propose a new desired state")
    s_prop.add_argument("--image", required=True)
    s_prop.add_argument("--replicas", type=int, required=True)
    s_prop.add_argument("--port", type=int, required=True)

    sub.add_parser("current", help="Show the current desired state")

    s_hist = sub.add_parser("history", help="List desired-state revisions")
    s_hist.add_argument("--limit", type=int, default=20)

    s_st = sub.add_parser("status", help="Convergence status of one revision")
    s_st.add_argument("revision", type=int)
    s_st.add_argument("--actions", action="store_true", help="Also list recorded action outcomes")

    s_revs = sub.add_parser("revisions", help="List convergence records")
    s_revs.add_argument("--limit", type=int, default=20)

    sub.add_parser("instances", help="Show the latest observed snapshot")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "propose":
        payload = {
            "image_reference": args.image,
            "replica_count": args.replicas,
            "exposed_port": args.port,
        }
        r = requests.post(f"{base}/desired", json=payload, auth=(args.user, args.password), timeout=30)
        return _show(r)

    if args.cmd == "current":
        return _show(requests.get(f"{base}/desired/current", timeout=10))

    if args.cmd == "history":
        return _show(requests.get(f"{base}/desired/history", params={"limit": args.limit}, timeout=10))

    if args.cmd == "status":
        rc = _show(requests.get(f"{base}/revisions/{args.revision}", timeout=10))
        if args.actions and rc == 0:
            rc = _show(requests.get(f"{base}/revisions/{args.revision}/actions", timeout=10))
        return rc

    if args.cmd == "revisions":
        return _show(requests.get(f"{base}/revisions", params={"limit": args.limit}, timeout=10))

    if args.cmd == "instances":
        return _show(requests.get(f"{base}/instances", timeout=10))

    if args.cmd == "events":
        return _show(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
