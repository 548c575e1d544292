from __future__ import annotations

import argparse
import json
import os
import sys

import requests

EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_ERROR = 2
EXIT_CONFLICT = 3
EXIT_INVALID = 4

_STATUS_EXIT = {404: EXIT_NOT_FOUND, 409: EXIT_CONFLICT, 422: EXIT_INVALID}


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _finish(r: requests.Response) -> int:
    try:
        body = r.json()
    except ValueError:
        body = {"detail": r.text}
    if r.ok:
        _print(body)
        return EXIT_OK
    print(json.dumps(body, indent=2, ensure_ascii=False), file=sys.stderr)
    return _STATUS_EXIT.get(r.status_code, EXIT_ERROR)


def _action(base: str, name: str, action: str, resource_version: int | None, **params) -> requests.Response:
    if resource_version is not None:
        params["resourceVersion"] = resource_version
    return requests.post(f"{base}/rollouts/{name}/{action}", params=params, timeout=30)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Progressive Delivery Controller CLI")
    p.add_argument("--api", default=os.getenv("PDC_API", "http://localhost:8000"), help="API base URL (env PDC_API)")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_apply = sub.add_parser("apply", help="Apply manifests from a YAML file")
    s_apply.add_argument("-f", "--filename", required=True, help="Manifest file, or - for stdin")

    s_get = sub.add_parser("get", help="Show one rollout")
    s_get.add_argument("name")

    sub.add_parser("list", help="List rollouts")

    for action, help_text in (
        ("promote", "Resume a paused rollout"),
        ("abort", "Abort the update in progress"),
        ("retry", "Retry an aborted rollout"),
        ("restart", "Redeploy the current template"),
    ):
        s = sub.add_parser(action, help=help_text)
        s.add_argument("name")
        s.add_argument("--resource-version", type=int, default=None, help="Fail unless the rollout is at this version")
        if action == "promote":
            s.add_argument("--full", action="store_true", help="Skip all remaining steps and gates")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--rollout", default=None)

    s_runs = sub.add_parser("runs", help="List analysis runs")
    s_runs.add_argument("--rollout", default=None)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    try:
        if args.cmd == "apply":
            if args.filename == "-":
                text = sys.stdin.read()
            else:
                with open(args.filename, encoding="utf-8") as fh:
                    text = fh.read()
            r = requests.post(
                f"{base}/manifests",
                data=text.encode("utf-8"),
                headers={"Content-Type": "application/yaml"},
                timeout=30,
            )
            return _finish(r)

        if args.cmd == "get":
            return _finish(requests.get(f"{base}/rollouts/{args.name}", timeout=10))

        if args.cmd == "list":
            return _finish(requests.get(f"{base}/rollouts", timeout=10))

        if args.cmd == "promote":
            return _finish(_action(base, args.name, "promote", args.resource_version, full=str(args.full).lower()))

        if args.cmd in ("abort", "retry", "restart"):
            return _finish(_action(base, args.name, args.cmd, args.resource_version))

        if args.cmd == "events":
            params = {"limit": args.limit}
            if args.rollout:
                params["rollout"] = args.rollout
            return _finish(requests.get(f"{base}/events", params=params, timeout=10))

        if args.cmd == "runs":
            params = {"rollout": args.rollout} if args.rollout else {}
            return _finish(requests.get(f"{base}/analysisruns", params=params, timeout=10))
    except requests.RequestException as e:
        print(f"error: cannot reach {base}: {e}", file=sys.stderr)
        return EXIT_ERROR
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_ERROR

    return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
