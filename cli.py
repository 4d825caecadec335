from __future__ import annotations

import argparse
import json
import sys

import requests

from pdc.errors import (
    ControllerError,
    DeploymentNotFound,
    HealthCheckTimeout,
    IllegalTransition,
    InvariantViolation,
    OrchestrationUnavailable,
)

EXIT_CODES = {
    cls.kind: cls.exit_code
    for cls in (
        ControllerError,
        DeploymentNotFound,
        HealthCheckTimeout,
        IllegalTransition,
        InvariantViolation,
        OrchestrationUnavailable,
    )
}


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _exit_code(r: requests.Response) -> int:
    if r.ok:
        return 0
    try:
        kind = r.json().get("error")
    except ValueError:
        return 1
    return EXIT_CODES.get(kind, 1)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Progressive Delivery Controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default=None, help="Basic auth user for mutating verbs")
    p.add_argument("--password", default=None, help="Basic auth password for mutating verbs")
    p.add_argument("--timeout", type=float, default=300, help="HTTP timeout; verbs block while the health gate waits")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("list", help="List deployments")
    sub.add_parser("check", help="Check API and orchestrator availability")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--deployment", default=None)

    s_st = sub.add_parser("status", help="Show one deployment record")
    s_st.add_argument("name")

    s_init = sub.add_parser("init", help="Create a deployment serving IMAGE at full capacity")
    s_init.add_argument("name")
    s_init.add_argument("--image", required=True)
    s_init.add_argument("--strategy", choices=["canary", "blue-green"], default=None, help="Server default if omitted")
    s_init.add_argument("--capacity", type=int, default=None, help="Total replicas (server default if omitted)")
    s_init.add_argument("--max-wait-s", type=float, default=None, help="Readiness deadline")

    s_dep = sub.add_parser("deploy", help="Roll out a candidate image")
    s_dep.add_argument("name")
    s_dep.add_argument("--image", required=True)
    s_dep.add_argument("--weight", type=int, default=0, help="Initial candidate weight (blue-green: 0 or 100)")
    s_dep.add_argument("--max-wait-s", type=float, default=None)

    s_shift = sub.add_parser("shift", help="Move traffic to WEIGHT percent on the candidate")
    s_shift.add_argument("name")
    s_shift.add_argument("weight", type=int)
    s_shift.add_argument("--max-wait-s", type=float, default=None)

    s_prom = sub.add_parser("promote", help="Make the candidate the new stable pool")
    s_prom.add_argument("name")
    s_prom.add_argument("--max-wait-s", type=float, default=None)

    for verb, text in (
        ("rollback", "Send all traffic back to the stable pool"),
        ("cleanup", "Delete pools that receive no traffic"),
        ("destroy", "Delete the deployment, its pools and its record"),
    ):
        s = sub.add_parser(verb, help=text)
        s.add_argument("name")

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    base = args.api.rstrip("/")
    auth = (args.user, args.password) if args.user and args.password else None
    url = f"{base}/deployments/{getattr(args, 'name', '')}"

    def post(verb: str, payload: dict | None = None) -> requests.Response:
        return requests.post(f"{url}/{verb}", json=payload, auth=auth, timeout=args.timeout)

    try:
        if args.cmd == "list":
            r = requests.get(f"{base}/deployments", timeout=10)
        elif args.cmd == "check":
            r = requests.get(f"{base}/check", timeout=10)
        elif args.cmd == "events":
            params = {"limit": args.limit}
            if args.deployment:
                params["deployment"] = args.deployment
            r = requests.get(f"{base}/events", params=params, timeout=10)
        elif args.cmd == "status":
            r = requests.get(url, timeout=10)
        elif args.cmd == "init":
            payload = {"image": args.image, "health_timeout_s": args.max_wait_s}
            if args.strategy:
                payload["strategy"] = args.strategy
            if args.capacity is not None:
                payload["total_capacity"] = args.capacity
            r = post("init", payload)
        elif args.cmd == "deploy":
            r = post("deploy", {"image": args.image, "weight": args.weight, "health_timeout_s": args.max_wait_s})
        elif args.cmd == "shift":
            r = post("shift", {"weight": args.weight, "health_timeout_s": args.max_wait_s})
        elif args.cmd == "promote":
            r = post("promote", {"health_timeout_s": args.max_wait_s})
        elif args.cmd in ("rollback", "cleanup"):
            r = post(args.cmd)
        elif args.cmd == "destroy":
            r = requests.delete(url, auth=auth, timeout=args.timeout)
        else:
            return 2
    except requests.ConnectionError as e:
        print(f"cannot reach {base}: {e}", file=sys.stderr)
        return 1

    try:
        _print(r.json())
    except ValueError:
        print(r.text)
    return _exit_code(r)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
