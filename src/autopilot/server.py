"""HTTP command surface for the scheduler and the function library."""

import json
from typing import Any, Optional

import structlog
from aiohttp import web

from .core.errors import ValidationError
from .library.functions import WorkflowStore
from .orchestrator.runner import WorkflowRunner
from .orchestrator.scheduler import TriggerScheduler


logger = structlog.get_logger()

_STATUS_BY_ERROR = {
    "ValidationError": 400,
    "NotFoundError": 404,
}


def _envelope_response(envelope: dict[str, Any]) -> web.Response:
    status = 200
    if not envelope.get("success"):
        status = _STATUS_BY_ERROR.get(envelope.get("errorType"), 200)
    return web.json_response(envelope, status=status)


def _error_response(error: ValidationError) -> web.Response:
    return web.json_response(
        {"success": False, "error": error.message, "errorType": "ValidationError", "field": error.field},
        status=400,
    )


async def _read_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("Request body is not valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _optional_int(value: Any, field: str) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", field=field)


class CommandServer:
    """aiohttp server exposing job and function commands."""

    def __init__(
        self,
        scheduler: TriggerScheduler,
        runner: WorkflowRunner,
        store: WorkflowStore,
        host: str = "127.0.0.1",
        port: int = 8080,
    ):
        self.scheduler = scheduler
        self.runner = runner
        self.store = store
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._validation_middleware])
        app.router.add_get("/health", self._health)
        app.router.add_get("/jobs", self._list_jobs)
        app.router.add_post("/jobs", self._create_job)
        app.router.add_delete("/jobs", self._clear_jobs)
        app.router.add_delete("/jobs/{job_id}", self._remove_job)
        app.router.add_post("/jobs/{job_id}/enable", self._enable_job)
        app.router.add_post("/jobs/{job_id}/disable", self._disable_job)
        app.router.add_post("/jobs/{job_id}/run", self._run_job)
        app.router.add_post("/scheduler", self._scheduler_command)
        app.router.add_post("/events/tab", self._tab_event)
        app.router.add_post("/events/dom-change", self._dom_change_event)
        app.router.add_get("/functions", self._list_functions)
        app.router.add_post("/functions", self._upsert_functions)
        app.router.add_post("/functions/{name}/run", self._run_function)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("command_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("command_server_stopped")

    @web.middleware
    async def _validation_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except ValidationError as e:
            logger.info("request_rejected", path=request.path, error=e.message)
            return _error_response(e)

    # ==================== Handlers ====================

    async def _health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "healthy",
            "jobs": len(self.scheduler.list_jobs()["jobs"]),
            "timers": len(self.scheduler.active_timers()),
            "functions": len(self.store.names()),
        })

    async def _list_jobs(self, request: web.Request) -> web.Response:
        return web.json_response(self.scheduler.list_jobs())

    async def _create_job(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        context_id = _optional_int(body.pop("contextId", None), "contextId")
        return _envelope_response(await self.scheduler.create(body, context_id))

    async def _clear_jobs(self, request: web.Request) -> web.Response:
        return _envelope_response(await self.scheduler.clear())

    async def _remove_job(self, request: web.Request) -> web.Response:
        return _envelope_response(await self.scheduler.remove(request.match_info["job_id"]))

    async def _enable_job(self, request: web.Request) -> web.Response:
        return _envelope_response(await self.scheduler.enable(request.match_info["job_id"]))

    async def _disable_job(self, request: web.Request) -> web.Response:
        return _envelope_response(await self.scheduler.disable(request.match_info["job_id"]))

    async def _run_job(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        context_id = _optional_int(body.get("contextId"), "contextId")
        return _envelope_response(
            await self.scheduler.run_now(request.match_info["job_id"], context_id)
        )

    async def _scheduler_command(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        context_id = _optional_int(body.pop("contextId", None), "contextId")
        return _envelope_response(await self.scheduler.execute_command(body, context_id))

    async def _tab_event(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        results = await self.scheduler.evaluate_keyword_jobs(body.get("reason") or "tab-updated")
        return web.json_response({"success": True, "results": results})

    async def _dom_change_event(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        job_id = body.get("jobId")
        if not job_id:
            raise ValidationError("jobId is required", field="jobId")
        context_id = _optional_int(body.get("contextId"), "contextId")
        if context_id is None:
            raise ValidationError("contextId is required", field="contextId")

        outcome = await self.scheduler.handle_dom_change(
            job_id,
            context_id,
            url=body.get("url"),
            reason=body.get("reason") or "dom-change",
        )
        return _envelope_response(outcome)

    async def _list_functions(self, request: web.Request) -> web.Response:
        return web.json_response({
            "success": True,
            "functions": [d.to_dict() for d in self.store.get_all().values()],
        })

    async def _upsert_functions(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        unique = request.query.get("unique", "true").lower() != "false"

        if isinstance(body.get("functions"), list):
            result = await self.store.upsert_many(body["functions"], unique=unique)
        else:
            result = await self.store.upsert(body, unique=unique)
        return web.json_response({"success": True, **result})

    async def _run_function(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        inputs = body.get("inputs") or {}
        if not isinstance(inputs, dict):
            raise ValidationError("inputs must be an object", field="inputs")
        context_id = _optional_int(body.get("contextId"), "contextId")

        result = await self.runner.run_by_name(request.match_info["name"], inputs, context_id)
        return _envelope_response({"errorType": result.error_type, **result.to_dict()})
