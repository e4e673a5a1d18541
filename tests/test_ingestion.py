from __future__ import annotations

import asyncio
import logging

from aiohttp import ClientSession, test_utils
import pytest

from services.errors import ValidationError
from services.ingestion import (
    ERROR_METHOD_NOT_ALLOWED,
    ERROR_MISSING_PARAMETERS,
    ERROR_PROCESSING,
    IngestionListener,
    parse_decimal,
    parse_ingestion_request,
)


class _Workflow:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.calls: list[tuple[int, int]] = []
        self.error = error

    async def trigger(self, user_id: int, submission_id: int) -> None:
        self.calls.append((user_id, submission_id))
        if self.error is not None:
            raise self.error


async def _request(workflow: _Workflow, method: str, query: str):
    listener = IngestionListener(workflow, path="/trigger")
    async with test_utils.TestClient(test_utils.TestServer(listener.build_app())) as client:
        response = await client.request(method, f"/trigger{query}")
        body = await response.json()
        return response, body


@pytest.mark.asyncio
async def test_valid_request_triggers_workflow_once():
    workflow = _Workflow()

    response, body = await _request(workflow, "GET", "?userId=123&submissionId=456")

    assert response.status == 200
    assert body == {"success": True, "receivedUserId": "123"}
    assert workflow.calls == [(123, 456)]
    assert response.headers["Content-Type"] == "application/json; charset=utf-8"
    assert int(response.headers["Content-Length"]) > 0


@pytest.mark.asyncio
async def test_non_numeric_user_id_is_rejected():
    workflow = _Workflow()

    response, body = await _request(workflow, "GET", "?userId=abc&submissionId=456")

    assert response.status == 400
    assert body == {"success": False, "error": "userId must be a valid numeric value"}
    assert workflow.calls == []


@pytest.mark.asyncio
async def test_non_numeric_submission_id_is_rejected():
    response, body = await _request(_Workflow(), "GET", "?userId=123&submissionId=4x")

    assert response.status == 400
    assert "submissionId" in body["error"]


@pytest.mark.asyncio
async def test_post_is_not_allowed():
    workflow = _Workflow()

    response, body = await _request(workflow, "POST", "?userId=123&submissionId=456")

    assert response.status == 405
    assert body == {"success": False, "error": ERROR_METHOD_NOT_ALLOWED}
    assert workflow.calls == []


@pytest.mark.asyncio
async def test_missing_parameter_is_rejected():
    response, body = await _request(_Workflow(), "GET", "?userId=123")

    assert response.status == 400
    assert body == {"success": False, "error": ERROR_MISSING_PARAMETERS}


@pytest.mark.asyncio
async def test_empty_parameter_counts_as_missing():
    response, body = await _request(_Workflow(), "GET", "?userId=&submissionId=456")

    assert response.status == 400
    assert body["error"] == ERROR_MISSING_PARAMETERS


@pytest.mark.asyncio
async def test_workflow_failure_returns_generic_500(caplog):
    workflow = _Workflow(error=RuntimeError("database password is hunter2"))

    with caplog.at_level(logging.ERROR, logger="qutie.ingestion"):
        response, body = await _request(workflow, "GET", "?userId=123&submissionId=456")

    assert response.status == 500
    assert body == {"success": False, "error": ERROR_PROCESSING}
    assert "hunter2" not in str(body)
    assert "Workflow failed for user 123" in caplog.text


@pytest.mark.asyncio
async def test_out_of_range_ids_are_rejected():
    response, body = await _request(_Workflow(), "GET", f"?userId={1 << 64}&submissionId=1")
    assert response.status == 400
    assert "userId" in body["error"]

    response, body = await _request(_Workflow(), "GET", "?userId=-1&submissionId=1")
    assert response.status == 400

    response, body = await _request(_Workflow(), "GET", f"?userId=1&submissionId={-(1 << 63)}")
    assert response.status == 200


def test_parse_decimal_accepts_whitespace_and_sign():
    assert parse_decimal(" +42 ", minimum=0, maximum=100) == 42
    assert parse_decimal("-7", minimum=-10, maximum=10) == -7
    assert parse_decimal("1e3", minimum=0, maximum=10_000) is None
    assert parse_decimal("٣", minimum=0, maximum=10) is None
    assert parse_decimal("", minimum=0, maximum=10) is None


def test_parse_ingestion_request_names_failing_field():
    with pytest.raises(ValidationError) as excinfo:
        parse_ingestion_request({"userId": "1", "submissionId": "x"})

    assert excinfo.value.field == "submissionId"
    assert excinfo.value.message == "submissionId must be a valid numeric value"


@pytest.mark.asyncio
async def test_serve_stops_cleanly_on_stop_event():
    workflow = _Workflow()
    listener = IngestionListener(workflow, host="127.0.0.1", port=0, path="/trigger")
    stop_event = asyncio.Event()

    serving = asyncio.create_task(listener.serve(stop_event))
    for _ in range(100):
        if listener.running:
            break
        await asyncio.sleep(0.01)
    host, port = listener.addresses[0][:2]

    async with ClientSession() as session:
        async with session.get(f"http://{host}:{port}/trigger?userId=5&submissionId=6") as response:
            assert response.status == 200
            assert await response.json() == {"success": True, "receivedUserId": "5"}

    stop_event.set()
    await asyncio.wait_for(serving, timeout=2)

    assert listener.running is False
    assert workflow.calls == [(5, 6)]


@pytest.mark.asyncio
async def test_oversized_numeric_input_is_rejected_as_invalid(caplog):
    workflow = _Workflow()

    with caplog.at_level(logging.WARNING, logger="qutie.ingestion"):
        response, body = await _request(workflow, "GET", f"?userId={'1' * 5000}&submissionId=1")

    assert response.status == 400
    assert body == {"success": False, "error": "userId must be a valid numeric value"}
    assert workflow.calls == []
    assert not [record for record in caplog.records if record.levelno >= logging.ERROR]

    response, body = await _request(workflow, "GET", f"?userId=1&submissionId=-{'9' * 5000}")
    assert response.status == 400
    assert body["error"] == "submissionId must be a valid numeric value"


def test_parse_decimal_ignores_leading_zeros_for_width():
    assert parse_decimal("0" * 5000 + "42", minimum=0, maximum=100) == 42
    assert parse_decimal("-" + "0" * 30, minimum=-1, maximum=1) == 0


@pytest.mark.asyncio
async def test_failed_response_composition_returns_fixed_body(monkeypatch, caplog):
    def _broken_json_response(payload, *, status=200):
        raise TypeError("cannot encode")

    monkeypatch.setattr("services.ingestion.json_response", _broken_json_response)
    listener = IngestionListener(_Workflow(), path="/trigger")

    with caplog.at_level(logging.ERROR, logger="qutie.ingestion"):
        async with test_utils.TestClient(test_utils.TestServer(listener.build_app())) as client:
            response = await client.post("/trigger?userId=1&submissionId=2")
            raw = await response.read()

    assert response.status == 500
    assert raw == b'{"success": false, "error": "An error occurred while processing the request"}'
    assert response.headers["Content-Type"] == "application/json; charset=utf-8"
    assert "Error building error response" in caplog.text


class _SlowWorkflow(_Workflow):
    def __init__(self, *, slow_user_id: int) -> None:
        super().__init__()
        self.slow_user_id = slow_user_id
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def trigger(self, user_id: int, submission_id: int) -> None:
        if user_id == self.slow_user_id:
            self.started.set()
            await self.release.wait()
        await super().trigger(user_id, submission_id)


async def _serve(listener: IngestionListener, stop_event: asyncio.Event) -> tuple[asyncio.Task, str]:
    serving = asyncio.create_task(listener.serve(stop_event))
    for _ in range(100):
        if listener.running:
            break
        await asyncio.sleep(0.01)
    host, port = listener.addresses[0][:2]
    return serving, f"http://{host}:{port}/trigger"


@pytest.mark.asyncio
async def test_slow_request_does_not_block_others():
    workflow = _SlowWorkflow(slow_user_id=1)
    listener = IngestionListener(workflow, host="127.0.0.1", port=0, path="/trigger")
    stop_event = asyncio.Event()
    serving, url = await _serve(listener, stop_event)

    async with ClientSession() as session:

        async def _get(user_id: int) -> int:
            async with session.get(f"{url}?userId={user_id}&submissionId=9") as response:
                return response.status

        slow = asyncio.create_task(_get(1))
        await asyncio.wait_for(workflow.started.wait(), timeout=2)
        assert await asyncio.wait_for(_get(2), timeout=2) == 200
        assert not slow.done()

        workflow.release.set()
        assert await asyncio.wait_for(slow, timeout=2) == 200

    stop_event.set()
    await asyncio.wait_for(serving, timeout=2)
    assert workflow.calls == [(2, 9), (1, 9)]


@pytest.mark.asyncio
async def test_shutdown_lets_in_flight_request_finish():
    workflow = _SlowWorkflow(slow_user_id=1)
    listener = IngestionListener(workflow, host="127.0.0.1", port=0, path="/trigger")
    stop_event = asyncio.Event()
    serving, url = await _serve(listener, stop_event)

    async with ClientSession() as session:

        async def _get() -> tuple[int, dict]:
            async with session.get(f"{url}?userId=1&submissionId=9") as response:
                return response.status, await response.json()

        in_flight = asyncio.create_task(_get())
        await asyncio.wait_for(workflow.started.wait(), timeout=2)

        stop_event.set()
        await asyncio.sleep(0.05)
        workflow.release.set()

        status, body = await asyncio.wait_for(in_flight, timeout=5)

    await asyncio.wait_for(serving, timeout=5)
    assert status == 200
    assert body == {"success": True, "receivedUserId": "1"}
    assert listener.running is False
