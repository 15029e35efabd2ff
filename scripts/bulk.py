"""Command-line client for the bulk user administration backend.

Submits CSV jobs to a running backend (``--base-url``) and follows the
progress stream, answering population prompts from flags or interactively.
"""
from __future__ import annotations
import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

SCRIPT_DIR = Path(__file__).parent
PROJECT_ROOT = SCRIPT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import requests

from app.core.progress_client import ProgressStreamClient

REQUEST_TIMEOUT = 60


class BackendError(Exception):
    """The backend answered with an error payload."""


def _check(resp: requests.Response) -> Any:
    try:
        payload = resp.json()
    except ValueError:
        payload = {"message": resp.text}
    if resp.status_code >= 400:
        message = payload.get("message") if isinstance(payload, dict) else None
        raise BackendError(f"HTTP {resp.status_code}: {message or resp.reason}")
    return payload


def _post_csv(base_url: str, path: str, csv_path: str, form: Dict[str, str]) -> Any:
    with open(csv_path, "rb") as fh:
        resp = requests.post(
            f"{base_url}{path}",
            files={"file": (Path(csv_path).name, fh, "text/csv")},
            data=form,
            timeout=REQUEST_TIMEOUT,
        )
    return _check(resp)


def _post_json(base_url: str, path: str, body: Dict[str, Any]) -> Any:
    return _check(requests.post(f"{base_url}{path}", json=body, timeout=REQUEST_TIMEOUT))


def _bool(value: bool) -> str:
    return "true" if value else "false"


# ─────────────────────────────────────────────────────────────────────────────
# Progress following
# ─────────────────────────────────────────────────────────────────────────────
def _ask(question: str, preset: Optional[str]) -> str:
    if preset:
        return preset
    return input(f"{question} ").strip()


def follow(args, session_id: str) -> int:
    """Print progress until the session ends; return the exit status."""
    client = ProgressStreamClient(args.base_url, session_id).start()
    status = 1
    for message in client.messages():
        if message.kind == "stalled":
            print(f"[progress] {message.data['message']}")
        elif message.kind == "closed" and message.data.get("outcome") in ("disconnected", "not_found"):
            print(f"[progress] Stream ended: {message.data['outcome']}", file=sys.stderr)
        elif message.kind == "event":
            status = _handle_event(args, session_id, message.event, message.data, status)
    client.join()
    return status


def _handle_event(args, session_id: str, event: str, data: Dict[str, Any], status: int) -> int:
    counts = data.get("counts") or {}
    if event == "progress":
        print(f"[progress] {data.get('message')} counts={json.dumps(counts)}")
    elif event == "population_conflict":
        print(f"[import] {data.get('message')}")
        choice = _ask("Use population from CSV? [csv/ui]", args.on_conflict)
        _post_json(args.base_url, "/import/resolve-conflict", {
            "sessionId": session_id,
            "useCsvPopulation": choice.lower().startswith("c"),
        })
    elif event == "invalid_population":
        print(f"[import] {data.get('message')}")
        replacement = _ask("Replacement population id:", args.replacement_population)
        _post_json(args.base_url, "/import/resolve-invalid-population", {
            "sessionId": session_id,
            "selectedPopulationId": replacement,
            "applyToAll": args.apply_to_all,
        })
    elif event == "complete":
        print(f"[complete] {data.get('message', 'Done')} counts={json.dumps(counts)}")
        return 0 if not counts.get("failed") else 2
    elif event == "error":
        print(f"[error] {data.get('message')} counts={json.dumps(counts)}", file=sys.stderr)
        return 1
    elif event == "close":
        print(f"[close] {data.get('reason', 'closed')} counts={json.dumps(counts)}")
        return 1
    return status


def _print_summary(summary: Dict[str, Any]) -> int:
    print(json.dumps(summary, indent=2))
    return 0 if summary.get("success") else 2


# ─────────────────────────────────────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────────────────────────────────────
def main(argv=None) -> None:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="PingOne bulk user administration client")
    parser.add_argument("--base-url", default=os.environ.get("BULK_BASE_URL", "http://localhost:4000"))

    sub = parser.add_subparsers(dest="cmd")

    si = sub.add_parser("import", help="Import users from a CSV file")
    si.add_argument("csv")
    si.add_argument("--population-id", default="")
    si.add_argument("--population-name", default="")
    si.add_argument("--generate-passwords", action="store_true")
    si.add_argument("--disabled", action="store_true", help="Create users disabled")
    si.add_argument("--abort-on-conflict", action="store_true")
    si.add_argument("--on-conflict", choices=["csv", "ui"], help="Answer for CSV/UI population conflicts")
    si.add_argument("--replacement-population", help="Answer for invalid populations")
    si.add_argument("--apply-to-all", action="store_true")

    sm = sub.add_parser("modify", help="Modify users from a CSV file")
    sm.add_argument("csv")
    sm.add_argument("--default-population-id", default="")
    sm.add_argument("--create-missing", action="store_true")
    sm.add_argument("--generate-passwords", action="store_true")

    sd = sub.add_parser("delete", help="Delete users listed in a CSV file")
    sd.add_argument("csv")
    sd.add_argument("--population-id", default="")

    sp = sub.add_parser("population-delete", help="Delete every user of a population")
    sp.add_argument("population_id")
    sp.add_argument("--yes", action="store_true", help="Skip confirmation")

    se = sub.add_parser("export", help="Export users")
    se.add_argument("--population-id", default="")
    se.add_argument("--fields", choices=["basic", "custom", "all"], default="basic")
    se.add_argument("--format", choices=["csv", "json"], default="csv")
    se.add_argument("--ignore-disabled", action="store_true")
    se.add_argument("--output", "-o", help="Write to file instead of stdout")

    sub.add_parser("populations", help="List populations")

    ss = sub.add_parser("status", help="Show a session's status")
    ss.add_argument("session_id")

    args = parser.parse_args(argv)
    base_url = args.base_url.rstrip("/")
    args.base_url = base_url

    try:
        if args.cmd == "import":
            accepted = _post_csv(base_url, "/import", args.csv, {
                "selectedPopulationId": args.population_id,
                "selectedPopulationName": args.population_name,
                "generatePasswords": _bool(args.generate_passwords),
                "defaultEnabled": _bool(not args.disabled),
                "continueOnConflict": _bool(not args.abort_on_conflict),
            })
            print(f"[import] Session {accepted['sessionId']} accepted ({accepted['total']} records)")
            sys.exit(follow(args, accepted["sessionId"]))
        elif args.cmd == "modify":
            summary = _post_csv(base_url, "/modify-users", args.csv, {
                "defaultPopulationId": args.default_population_id,
                "createIfNotExists": _bool(args.create_missing),
                "generatePasswords": _bool(args.generate_passwords),
            })
            sys.exit(_print_summary(summary))
        elif args.cmd == "delete":
            summary = _post_csv(base_url, "/delete-users", args.csv, {"populationId": args.population_id})
            sys.exit(_print_summary(summary))
        elif args.cmd == "population-delete":
            if not args.yes and input(f"Delete ALL users in {args.population_id}? [y/N] ").strip().lower() != "y":
                print("[population-delete] Aborted")
                sys.exit(1)
            summary = _post_json(base_url, "/population-delete", {"populationId": args.population_id})
            sys.exit(_print_summary(summary))
        elif args.cmd == "export":
            resp = requests.post(f"{base_url}/export-users", json={
                "populationId": args.population_id,
                "fields": args.fields,
                "format": args.format,
                "ignoreDisabledUsers": args.ignore_disabled,
            }, timeout=REQUEST_TIMEOUT)
            if resp.status_code >= 400:
                _check(resp)
            content = resp.text if args.format == "csv" else json.dumps(resp.json()["users"], indent=2)
            if args.output:
                Path(args.output).write_text(content, encoding="utf-8")
                print(f"[export] Wrote {args.output}")
            else:
                sys.stdout.write(content)
        elif args.cmd == "populations":
            for population in _check(requests.get(f"{base_url}/pingone/populations", timeout=REQUEST_TIMEOUT)):
                marker = "*" if population.get("default") else " "
                print(f"{marker} {population['id']}  {population['name']}  ({population.get('userCount', 0)} users)")
        elif args.cmd == "status":
            status = _check(requests.get(f"{base_url}/import/status/{args.session_id}", timeout=REQUEST_TIMEOUT))
            print(json.dumps(status, indent=2))
        else:
            parser.print_help()
    except (BackendError, requests.RequestException, OSError) as e:
        print(f"[{args.cmd}] Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
