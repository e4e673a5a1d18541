from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import re
from typing import Any, Mapping, Protocol

from aiohttp import web

from services.errors import ValidationError


log = logging.getLogger("qutie.ingestion")

USER_ID_PARAM = "userId"
SUBMISSION_ID_PARAM = "submissionId"

ERROR_METHOD_NOT_ALLOWED = "Only GET requests are allowed"
ERROR_MISSING_PARAMETERS = "Both userId and submissionId are required"
ERROR_PROCESSING = "An error occurred while processing the request"

_FALLBACK_ERROR_BODY = b'{"success": false, "error": "An error occurred while processing the request"}'

_DECIMAL_PATTERN = re.compile(r"[+-]?[0-9]+")
# Widest accepted value is 2**64 - 1.
MAX_DECIMAL_DIGITS = 20

UINT64_MIN, UINT64_MAX = 0, (1 << 64) - 1
INT64_MIN, INT64_MAX = -(1 << 63), (1 << 63) - 1


class Workflow(Protocol):
    async def trigger(self, user_id: int, submission_id: int) -> Any:
        ...


@dataclass(frozen=True, slots=True)
class IngestionRequest:
    user_id: int
    submission_id: int


def parse_decimal(raw: str, *, minimum: int, maximum: int) -> int | None:
    text = raw.strip()
    if not _DECIMAL_PATTERN.fullmatch(text):
        return None
    digits = text.lstrip("+-").lstrip("0") or "0"
    if len(digits) > MAX_DECIMAL_DIGITS:
        return None
    value = -int(digits) if text.startswith("-") else int(digits)
    if value < minimum or value > maximum:
        return None
    return value


def parse_ingestion_request(query: Mapping[str, str]) -> IngestionRequest:
    raw_user_id = query.get(USER_ID_PARAM) or ""
    raw_submission_id = query.get(SUBMISSION_ID_PARAM) or ""
    if not raw_user_id or not raw_submission_id:
        raise ValidationError(ERROR_MISSING_PARAMETERS)

    user_id = parse_decimal(raw_user_id, minimum=UINT64_MIN, maximum=UINT64_MAX)
    if user_id is None:
        raise ValidationError(f"{USER_ID_PARAM} must be a valid numeric value", field=USER_ID_PARAM)
    submission_id = parse_decimal(raw_submission_id, minimum=INT64_MIN, maximum=INT64_MAX)
    if submission_id is None:
        raise ValidationError(f"{SUBMISSION_ID_PARAM} must be a valid numeric value", field=SUBMISSION_ID_PARAM)
    return IngestionRequest(user_id=user_id, submission_id=submission_id)


def json_response(payload: dict[str, object], *, status: int = 200) -> web.Response:
    return web.json_response(payload, status=status, content_type="application/json")


class IngestionListener:
    """Single-endpoint HTTP listener that turns valid GET requests into workflow triggers."""

    def __init__(
        self,
        workflow: Workflow,
        *,
        host: str = "0.0.0.0",
        port: int = 5000,
        path: str = "/webhook",
    ) -> None:
        self.workflow = workflow
        self.host = host
        self.port = int(port)
        self.path = path
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    @property
    def running(self) -> bool:
        return self._site is not None

    @property
    def addresses(self) -> list[Any]:
        if self._runner is None:
            return []
        return list(self._runner.addresses)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", self.path, self.handle)
        return app

    async def handle(self, request: web.Request) -> web.Response:
        try:
            return await self._process(request)
        except Exception:
            log.exception("Unhandled error while processing %s %s", request.method, request.path)
            return self._error_response(500, ERROR_PROCESSING)

    async def _process(self, request: web.Request) -> web.Response:
        log.debug("Received %s request from %s", request.method, request.remote)
        if request.method != "GET":
            log.warning("Rejected %s request: only GET is supported", request.method)
            return self._error_response(405, ERROR_METHOD_NOT_ALLOWED)

        try:
            parsed = parse_ingestion_request(request.query)
        except ValidationError as exc:
            log.warning("Rejected ingestion request: %s", exc.message)
            return self._error_response(400, exc.message)

        log.info("Triggering workflow for user %s with submission %s", parsed.user_id, parsed.submission_id)
        try:
            await self.workflow.trigger(parsed.user_id, parsed.submission_id)
        except Exception:
            log.exception("Workflow failed for user %s", parsed.user_id)
            return self._error_response(500, ERROR_PROCESSING)

        return json_response({"success": True, "receivedUserId": str(parsed.user_id)})

    @staticmethod
    def _error_response(status: int, message: str) -> web.Response:
        try:
            return json_response({"success": False, "error": message}, status=status)
        except Exception:
            log.exception("Error building error response")
            return web.Response(
                body=_FALLBACK_ERROR_BODY,
                status=500,
                content_type="application/json",
                charset="utf-8",
            )

    async def start(self) -> None:
        if self._site is not None:
            return
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, host=self.host, port=self.port)
        try:
            await site.start()
        except Exception:
            await runner.cleanup()
            raise
        self._runner = runner
        self._site = site
        log.info("Ingestion listener started on %s", ", ".join(str(address) for address in self.addresses))

    async def stop(self) -> None:
        site, runner = self._site, self._runner
        self._site = None
        self._runner = None
        if site is not None:
            await site.stop()
        if runner is not None:
            await runner.cleanup()
            log.info("Ingestion listener stopped")

    async def serve(self, stop_event: asyncio.Event) -> None:
        try:
            await self.start()
        except OSError:
            log.exception("Ingestion listener failed to bind %s:%s", self.host, self.port)
            return
        try:
            await stop_event.wait()
        finally:
            await self.stop()
