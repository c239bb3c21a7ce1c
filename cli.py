from __future__ import annotations

import argparse
import json
import os
import sys
import time

import requests

from dorc.errors import RolloutError, ServiceFailedError, exit_code_for


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _fail(r: requests.Response) -> int:
    try:
        body = r.json()
    except ValueError:
        body = {"error": None, "detail": r.text}
    _print(body)
    if r.status_code == 401:
        return 2
    return exit_code_for(body.get("error") if isinstance(body, dict) else None)


def _wait(session: requests.Session, base: str, service: str, revision_id: str, poll_s: float, max_wait_s: float) -> int:
    deadline = time.monotonic() + max_wait_s
    while True:
        r = session.get(f"{base}/services/{service}", timeout=10)
        if not r.ok:
            return _fail(r)
        st = r.json()
        phase = st["phase"]
        if phase == "COMMITTED":
            _print(st)
            if st["current_revision"] == revision_id:
                return 0
            # rolled back to the previous revision
            return RolloutError.exit_code
        if phase == "FAILED":
            _print(st)
            return ServiceFailedError.exit_code
        if time.monotonic() >= deadline:
            _print(st)
            print(f"Still {phase} after {max_wait_s:g}s", file=sys.stderr)
            return 1
        time.sleep(poll_s)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Deployment Orchestration Core CLI")
    p.add_argument("--api", default=os.getenv("DORC_API", "http://localhost:8000"), help="API base URL")
    p.add_argument("--user", default=os.getenv("DORC_API_USER", "admin"))
    p.add_argument("--password", default=os.getenv("DORC_API_PASSWORD", "change-me"))
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("services", help="List services")

    s_st = sub.add_parser("status", help="Show one service")
    s_st.add_argument("service")

    s_dep = sub.add_parser("deploy", help="Deploy a revision document (JSON)")
    s_dep.add_argument("service")
    s_dep.add_argument("--file", required=True, help="Revision JSON file, '-' for stdin")
    s_dep.add_argument("--revision-id", help="Override the document's revision_id")
    s_dep.add_argument("--wait", action="store_true", help="Wait for COMMITTED or FAILED")
    s_dep.add_argument("--poll-s", type=float, default=2.0)
    s_dep.add_argument("--max-wait-s", type=float, default=900.0)

    s_ab = sub.add_parser("abort", help="Abort an in-flight rollout")
    s_ab.add_argument("service")
    s_ab.add_argument("--reason", default="aborted by operator")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--service")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    session = requests.Session()
    session.auth = (args.user, args.password)

    if args.cmd == "services":
        r = session.get(f"{base}/services", timeout=10)
        if not r.ok:
            return _fail(r)
        _print(r.json())
        return 0

    if args.cmd == "status":
        r = session.get(f"{base}/services/{args.service}", timeout=10)
        if not r.ok:
            return _fail(r)
        _print(r.json())
        return 0

    if args.cmd == "deploy":
        if args.file == "-":
            payload = json.load(sys.stdin)
        else:
            with open(args.file, encoding="utf-8") as fh:
                payload = json.load(fh)
        if args.revision_id:
            payload["revision_id"] = args.revision_id
        r = session.post(f"{base}/services/{args.service}/deploy", json=payload, timeout=30)
        if not r.ok:
            return _fail(r)
        st = r.json()
        if not args.wait or st["target_revision"] is None:
            # no-op deploys come back COMMITTED with no target
            _print(st)
            return 0
        return _wait(session, base, args.service, st["target_revision"], args.poll_s, args.max_wait_s)

    if args.cmd == "abort":
        r = session.post(f"{base}/services/{args.service}/abort", json={"reason": args.reason}, timeout=30)
        if not r.ok:
            return _fail(r)
        _print(r.json())
        return 0

    if args.cmd == "events":
        params: dict[str, object] = {"limit": args.limit}
        if args.service:
            params["service_id"] = args.service
        r = session.get(f"{base}/events", params=params, timeout=10)
        if not r.ok:
            return _fail(r)
        _print(r.json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
