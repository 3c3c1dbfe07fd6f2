#!/usr/bin/env python3
"""Smoke test for end-to-end SSE generation against a running gateway.

Usage:
  python scripts/smoke_stream.py --base-url http://127.0.0.1:8000 --model local/llama-3.2-3b-instruct

Environment fallbacks:
  AIGATEWAY_BASE_URL, AIGATEWAY_CALLER_ID, AIGATEWAY_TOKEN
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

import httpx


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="AI gateway SSE smoke test")
    parser.add_argument("--base-url", default=os.getenv("AIGATEWAY_BASE_URL", "http://127.0.0.1:8000"))
    parser.add_argument("--caller-id", default=os.getenv("AIGATEWAY_CALLER_ID", "smoke-test"))
    parser.add_argument("--token", default=os.getenv("AIGATEWAY_TOKEN"))
    parser.add_argument("--model", default=None)
    parser.add_argument("--prompt", default="A hero section with a headline and a call to action button")
    parser.add_argument("--sync", action="store_true", help="Run a model sync before generating")
    parser.add_argument("--stream-timeout", type=float, default=120.0)
    parser.add_argument("--quiet", action="store_true")
    return parser.parse_args()


def exit_with(message: str, code: int = 1) -> None:
    print(message, file=sys.stderr)
    raise SystemExit(code)


def safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        return response.json()
    except Exception:
        return {}


def main() -> None:
    args = parse_args()
    headers = {"X-Caller-Id": args.caller_id}
    if args.token:
        headers["Authorization"] = f"Bearer {args.token}"

    client = httpx.Client(base_url=args.base_url.rstrip("/"), headers=headers, timeout=10.0)

    health = client.get("/health")
    if health.status_code != 200:
        exit_with(f"Health check failed: HTTP {health.status_code} {health.text}")

    if args.sync:
        sync = client.post("/ai/models/sync", json={}, timeout=60.0)
        if sync.status_code != 200:
            exit_with(f"Model sync failed: HTTP {sync.status_code} {sync.text}")
        if not args.quiet:
            print(f"Synced: {safe_json(sync)}")

    payload: dict[str, Any] = {"prompt": args.prompt, "mode": "page", "connection": "server"}
    if args.model:
        payload["model"] = args.model

    stream_timeout = httpx.Timeout(connect=10.0, read=args.stream_timeout, write=10.0, pool=10.0)

    html = ""
    session_id = None
    terminal: dict[str, Any] | None = None
    terminal_event = None
    current_event = "message"

    with client.stream("POST", "/ai/generate", json=payload, timeout=stream_timeout) as response:
        if response.status_code != 200:
            response.read()
            exit_with(f"Generate request failed: HTTP {response.status_code} {response.text}")
        content_type = response.headers.get("content-type", "")
        if "text/event-stream" not in content_type:
            exit_with(f"Unexpected content-type: {content_type}")

        for line in response.iter_lines():
            if line.startswith("event:"):
                current_event = line.split(":", 1)[1].strip()
                continue
            if line.startswith("data:"):
                try:
                    data = json.loads(line.split(":", 1)[1].strip())
                except json.JSONDecodeError:
                    continue
                if current_event == "meta":
                    session_id = data.get("session_id")
                    if not args.quiet:
                        print(f"Session {session_id} using {data.get('provider')}/{data.get('model')}")
                elif current_event == "chunk":
                    delta = data.get("delta") or ""
                    html += delta
                    if not args.quiet:
                        sys.stdout.write(delta)
                        sys.stdout.flush()
                elif current_event in ("done", "error"):
                    terminal, terminal_event = data, current_event
                    break
            if line == "":
                current_event = "message"

    if not args.quiet:
        print("")

    if not session_id:
        exit_with("No session_id received in stream meta")
    if terminal is None:
        exit_with("Stream ended without a terminal event")
    if terminal_event == "error":
        exit_with(f"Generation ended in {terminal.get('state')}: {terminal.get('message')}")
    if not html:
        exit_with("No chunks received")

    status = client.get(f"/ai/sessions/{session_id}")
    if status.status_code != 200:
        exit_with(f"Session status failed: HTTP {status.status_code} {status.text}")
    print(f"OK: {safe_json(status).get('state')} ({len(html.encode('utf-8'))} bytes, truncated={terminal.get('truncated')})")


if __name__ == "__main__":
    main()
