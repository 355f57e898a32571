"""Wait for a workspace to appear after checkout and remember it as selected."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys
from typing import Callable, Optional

import httpx

from src.workspaces.provisioning import POLL_FOUND, wait_for_provisioned_workspace


def build_latest_workspace_fetcher(
    client: httpx.Client,
    *,
    base_url: str,
    token: str,
) -> Callable[[], Optional[str]]:
    url = f"{base_url.rstrip('/')}/workspaces/latest"
    headers = {"Authorization": f"Bearer {token}"}

    def fetch_latest() -> Optional[str]:
        response = client.get(url, headers=headers)
        response.raise_for_status()
        workspace = (response.json() or {}).get("workspace") or {}
        workspace_id = workspace.get("id")
        return str(workspace_id) if workspace_id else None

    return fetch_latest


def write_selected_workspace(path: Path, workspace_id: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"selected_workspace": workspace_id}) + "\n", encoding="utf-8")


def main() -> int:
    parser = argparse.ArgumentParser(description="Wait until a paid workspace has been provisioned.")
    parser.add_argument("--base-url", default="http://localhost:18000")
    parser.add_argument("--token", required=True, help="Access token of the workspace owner.")
    parser.add_argument("--attempts", type=int, default=10)
    parser.add_argument("--interval", type=float, default=1.0)
    parser.add_argument("--initial-delay", type=float, default=1.0)
    parser.add_argument("--timeout", type=float, default=5.0)
    parser.add_argument("--state-file", default=".openpolicy/selected_workspace.json")
    args = parser.parse_args()

    if args.attempts <= 0:
        raise ValueError("--attempts must be positive")

    with httpx.Client(timeout=args.timeout) as client:
        result = wait_for_provisioned_workspace(
            build_latest_workspace_fetcher(client, base_url=args.base_url, token=args.token),
            attempts=args.attempts,
            interval_seconds=args.interval,
            initial_delay_seconds=args.initial_delay,
        )

    if result.status != POLL_FOUND or not result.workspace_id:
        print(f"status=timeout attempts={result.attempts}")
        return 1

    write_selected_workspace(Path(args.state_file), result.workspace_id)
    print(f"status=found workspace_id={result.workspace_id} attempts={result.attempts}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
