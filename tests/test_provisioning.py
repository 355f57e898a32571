from __future__ import annotations

import json

import httpx
import pytest

from scripts.await_workspace import build_latest_workspace_fetcher, write_selected_workspace
from src.workspaces.provisioning import POLL_FOUND, POLL_TIMEOUT, wait_for_provisioned_workspace


class _Sleeper:
    def __init__(self) -> None:
        self.calls = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def test_poll_returns_first_workspace_found() -> None:
    responses = iter([None, None, "ws-1"])
    sleeper = _Sleeper()

    result = wait_for_provisioned_workspace(
        lambda: next(responses),
        attempts=10,
        interval_seconds=1.0,
        initial_delay_seconds=2.0,
        sleep=sleeper,
    )

    assert result.status == POLL_FOUND
    assert result.found is True
    assert result.workspace_id == "ws-1"
    assert result.attempts == 3
    assert sleeper.calls == [2.0, 1.0, 1.0]


def test_poll_is_bounded_and_reports_timeout() -> None:
    sleeper = _Sleeper()
    lookups = []

    def fetch_latest():
        lookups.append(1)
        return None

    result = wait_for_provisioned_workspace(
        fetch_latest,
        attempts=4,
        interval_seconds=0.5,
        initial_delay_seconds=1.0,
        sleep=sleeper,
    )

    assert result.status == POLL_TIMEOUT
    assert result.workspace_id is None
    assert len(lookups) == 4
    assert sum(sleeper.calls) == pytest.approx(1.0 + 3 * 0.5)


def test_poll_treats_lookup_errors_as_misses() -> None:
    outcomes = iter([RuntimeError("boom"), "ws-2"])

    def fetch_latest():
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    result = wait_for_provisioned_workspace(fetch_latest, attempts=3, initial_delay_seconds=0, sleep=_Sleeper())

    assert result.workspace_id == "ws-2"
    assert result.attempts == 2


def test_poll_rejects_non_positive_attempts() -> None:
    with pytest.raises(ValueError):
        wait_for_provisioned_workspace(lambda: None, attempts=0, sleep=_Sleeper())


def test_latest_workspace_fetcher_reads_api(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/workspaces/latest"
        assert request.headers["authorization"] == "Bearer tok"
        return httpx.Response(200, json={"workspace": {"id": "ws-9"}})

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        fetch = build_latest_workspace_fetcher(client, base_url="http://api.test/", token="tok")
        assert fetch() == "ws-9"

    state_file = tmp_path / "state" / "selected.json"
    write_selected_workspace(state_file, "ws-9")
    assert json.loads(state_file.read_text(encoding="utf-8")) == {"selected_workspace": "ws-9"}


def test_latest_workspace_fetcher_handles_empty_response() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"workspace": None}))
    with httpx.Client(transport=transport) as client:
        assert build_latest_workspace_fetcher(client, base_url="http://api.test", token="tok")() is None
