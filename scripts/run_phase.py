#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

PHASES = ("t42", "t14", "t3")


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("REMINDERS_API_BASE_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1/cron"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/cron"


def _request_json(
    method: str,
    base_url: str,
    path: str,
    *,
    payload: dict[str, Any] | None = None,
    token: str | None = None,
    timeout: int = 300,
) -> dict[str, Any]:
    body = None if payload is None else json.dumps(payload).encode("utf-8")
    headers: dict[str, str] = {"Accept": "application/json"}
    if payload is not None:
        headers["Content-Type"] = "application/json"
    if token:
        headers["Authorization"] = f"Bearer {token}"

    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=body,
        headers=headers,
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"{method} {path} failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Trigger one delivery confirmation reminder pass and print its summary.",
    )
    parser.add_argument("phase", choices=PHASES, help="Phase to run.")
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Backend base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or the full cron prefix (e.g. http://localhost:8000/api/v1/cron)."
        ),
    )
    parser.add_argument(
        "--cron-secret",
        default=None,
        help="Bearer token for the cron endpoints. Defaults to CRON_SECRET from environment/.env.",
    )
    parser.add_argument(
        "--now-override",
        default=None,
        help="ISO-8601 datetime with offset; only honoured when the server sets CRON_ALLOW_NOW_OVERRIDE=true.",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print today's job status for the phase instead of running it.",
    )
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    cron_secret = (args.cron_secret or os.getenv("CRON_SECRET", "")).strip()
    if not cron_secret:
        raise SystemExit("CRON_SECRET is required (set .env or pass --cron-secret)")

    api_base_url = _resolve_api_base_url(args.api_base_url)
    if args.status:
        response = _request_json("GET", api_base_url, f"{args.phase}/status", token=cron_secret)
    else:
        payload = {"now_override": args.now_override} if args.now_override else {}
        response = _request_json("POST", api_base_url, args.phase, payload=payload, token=cron_secret)

    print(json.dumps(response, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
