"""Trigger scheduling: interval, at-time, keyword and DOM-change jobs."""

import asyncio
import math
import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog

from ..browser.driver import ContextInfo, DomWatcherConfig, PageDriver
from ..core.config import SchedulerConfig
from ..core.errors import (
    AutopilotError,
    NotFoundError,
    TargetResolutionError,
    ValidationError,
)
from ..core.models import Job, JobSpec, LastTrigger
from ..core.state import StateManager
from ..library.functions import WorkflowStore
from ..safety.throttle import DomTriggerGuard
from .matching import (
    is_internal_url,
    keyword_matches,
    matches_url_filter,
    now_ms,
    parse_at_time,
)
from .runner import WorkflowRunner


logger = structlog.get_logger()

TIMER_PREFIX = "scheduler_job_"

_BASE36 = string.digits + string.ascii_lowercase


def timer_name(job_id: str) -> str:
    return f"{TIMER_PREFIX}{job_id}"


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def _new_job_id() -> str:
    suffix = "".join(random.choices(_BASE36, k=7))
    return f"job_{_base36(now_ms())}_{suffix}"


def _iso_from_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _failure(error: AutopilotError) -> dict[str, Any]:
    envelope = {"success": False, "error": error.message, "errorType": type(error).__name__}
    if isinstance(error, ValidationError) and error.field:
        envelope["field"] = error.field
    return envelope


def _ignored(reason: str) -> dict[str, Any]:
    return {"success": False, "ignored": True, "reason": reason}


class TriggerScheduler:
    """
    Decides when workflows run.

    Features:
    - Interval and at-time timers, one per job, recomputed from persisted jobs
    - Keyword jobs evaluated against the active page on navigation events
    - DOM-change jobs behind in-flight, suppression and debounce guards
    - Cooldown and once-per-URL deduplication
    - Every run funnels through ``on_fire`` and updates the job record
    """

    def __init__(
        self,
        config: SchedulerConfig,
        state: Optional[StateManager],
        store: WorkflowStore,
        runner: WorkflowRunner,
        driver: PageDriver,
        guard: Optional[DomTriggerGuard] = None,
    ):
        self.config = config
        self.state = state
        self.store = store
        self.runner = runner
        self.driver = driver
        self.guard = guard or DomTriggerGuard(
            min_suppression_ms=config.min_suppression_ms,
            max_suppression_ms=config.max_suppression_ms,
        )

        self._jobs: dict[str, Job] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._keyword_in_flight = False

    # ==================== Lifecycle ====================

    async def initialize(self) -> None:
        """Load persisted jobs and re-derive every timer."""
        if self.state is not None:
            for job in await self.state.load_jobs():
                self._jobs[job.id] = job

        for job in list(self._jobs.values()):
            was_enabled = job.enabled
            try:
                self._schedule_timer(job)
            except ValidationError as e:
                job.enabled = False
                job.last_error = e.message
            if job.enabled != was_enabled:
                await self._save(job)

        await self.sync_dom_watchers("startup")
        logger.info("scheduler_initialized", jobs=len(self._jobs), timers=len(self._timers))

    async def shutdown(self) -> None:
        """Cancel all timers."""
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scheduler_stopped", cancelled_timers=len(tasks))

    # ==================== Queries ====================

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_jobs(self) -> dict[str, Any]:
        return {"success": True, "jobs": [job.sanitized() for job in self._jobs.values()]}

    def active_timers(self) -> list[str]:
        return [
            timer_name(job_id)
            for job_id, task in self._timers.items()
            if not task.done()
        ]

    # ==================== Mutations ====================

    async def create(
        self,
        spec: Union[JobSpec, dict[str, Any]],
        context_id: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Validate a job spec, persist the job and arm its trigger.

        Args:
            spec: JobSpec or raw dict in any accepted key vocabulary
            context_id: Caller's context, used as tabId for fixedTab jobs

        Returns:
            ``{"success", "job"}`` plus ``runResult`` when runNow was set
        """
        try:
            if not isinstance(spec, JobSpec):
                spec = JobSpec.parse(spec)
            job = self._build_job(spec, context_id)
            self._schedule_timer(job)
        except ValidationError as e:
            logger.info("job_rejected", error=e.message, field=e.field)
            return _failure(e)

        self._jobs[job.id] = job
        await self._save(job)
        if job.schedule_type == "domChange":
            await self.sync_dom_watchers("job-created")

        logger.info(
            "job_created",
            job_id=job.id,
            function=job.function_name,
            schedule_type=job.schedule_type,
        )

        envelope: dict[str, Any] = {"success": True, "job": job.sanitized()}
        if spec.run_now:
            envelope["runResult"] = await self.on_fire(
                job.id, "manual", reason="run-on-create", context_id=context_id
            )
            current = self._jobs.get(job.id)
            if current is not None:
                envelope["job"] = current.sanitized()
        return envelope

    async def remove(self, job_id: Optional[str]) -> dict[str, Any]:
        job = self._jobs.get(job_id) if job_id else None
        if job is None:
            return _failure(NotFoundError(f"Job not found: {job_id}", kind="job", name=job_id))

        self._clear_timer(job_id)
        self.guard.clear_job(job_id)
        del self._jobs[job_id]
        if self.state is not None:
            await self.state.delete_job(job_id)
        if job.schedule_type == "domChange":
            await self.sync_dom_watchers("job-removed")

        logger.info("job_removed", job_id=job_id)
        return {"success": True, "removedId": job_id}

    async def enable(self, job_id: Optional[str]) -> dict[str, Any]:
        job = self._jobs.get(job_id) if job_id else None
        if job is None:
            return _failure(NotFoundError(f"Job not found: {job_id}", kind="job", name=job_id))

        job.enabled = True
        try:
            self._schedule_timer(job)
            if job.schedule_type == "atTime" and not job.enabled:
                raise ValidationError("atTime must be in the future", field="atTime")
        except ValidationError as e:
            job.enabled = False
            await self._save(job)
            return _failure(e)

        await self._save(job)
        if job.schedule_type == "domChange":
            await self.sync_dom_watchers("job-enabled")
        logger.info("job_enabled", job_id=job_id, enabled=job.enabled)
        return {"success": True, "job": job.sanitized()}

    async def disable(self, job_id: Optional[str]) -> dict[str, Any]:
        job = self._jobs.get(job_id) if job_id else None
        if job is None:
            return _failure(NotFoundError(f"Job not found: {job_id}", kind="job", name=job_id))

        job.enabled = False
        self._clear_timer(job_id)
        self.guard.clear_job(job_id)
        await self._save(job)
        if job.schedule_type == "domChange":
            await self.sync_dom_watchers("job-disabled")
        logger.info("job_disabled", job_id=job_id)
        return {"success": True, "job": job.sanitized()}

    async def clear(self) -> dict[str, Any]:
        """Remove every job."""
        count = len(self._jobs)
        for job_id in list(self._timers):
            self._clear_timer(job_id)
        self.guard.clear()
        self._jobs.clear()
        if self.state is not None:
            await self.state.clear_jobs()
        await self.sync_dom_watchers("jobs-cleared")
        logger.info("jobs_cleared", count=count)
        return {"success": True, "cleared": count}

    async def run_now(self, job_id: Optional[str], context_id: Optional[int] = None) -> dict[str, Any]:
        """Manual trigger; cooldown still applies."""
        if not job_id:
            return _failure(ValidationError("jobId is required", field="jobId"))
        return await self.on_fire(job_id, "manual", reason="run-now", context_id=context_id)

    async def execute_command(
        self,
        params: Optional[dict[str, Any]],
        context_id: Optional[int] = None,
    ) -> dict[str, Any]:
        """String-action dispatch used by the scheduler tool and the HTTP surface."""
        params = dict(params or {})
        action = str(params.get("action") or "list").strip().lower()
        job_id = params.get("jobId") or params.get("job_id") or params.get("id")

        if action == "list":
            return self.list_jobs()
        if action == "create":
            spec = {k: v for k, v in params.items() if k != "action"}
            return await self.create(spec, context_id)
        if action in ("remove", "delete"):
            return await self.remove(job_id)
        if action in ("runnow", "run-now", "run"):
            return await self.run_now(job_id, context_id)
        if action == "enable":
            return await self.enable(job_id)
        if action == "disable":
            return await self.disable(job_id)
        if action == "clear":
            return await self.clear()

        return _failure(ValidationError(f"Unknown scheduler action: {action}", field="action"))

    # ==================== Firing ====================

    def _in_cooldown(self, job: Job, now: int) -> bool:
        if job.cooldown_minutes <= 0 or job.last_run_at is None:
            return False
        return now - job.last_run_at < job.cooldown_minutes * 60_000

    async def on_fire(
        self,
        job_id: str,
        trigger_type: str = "manual",
        reason: Optional[str] = None,
        context_id: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Run a job once.

        Rechecks enabled state and cooldown, resolves the target context,
        runs the workflow and records the outcome on the job. At-time jobs
        are disabled afterwards whatever the outcome.
        """
        job = self._jobs.get(job_id)
        if job is None:
            return _failure(NotFoundError(f"Job not found: {job_id}", kind="job", name=job_id))
        if not job.enabled:
            return {"success": False, "error": "Job is disabled"}
        if self._in_cooldown(job, now_ms()):
            logger.debug("job_in_cooldown", job_id=job_id, trigger=trigger_type)
            return {
                "success": False,
                "skipped": True,
                "reason": "cooldown",
                "error": "Job is in cooldown window",
            }

        started_at = time.time()
        status, error = "error", None
        run_context = context_id
        logger.info("job_fired", job_id=job_id, trigger=trigger_type, reason=reason)

        try:
            definition = await self.runner.resolve_function(job.function_name)
            if definition is None:
                raise NotFoundError(
                    f'Function "{job.function_name}" not found',
                    kind="function",
                    name=job.function_name,
                )

            context = await self._resolve_target(job, context_id)
            run_context = context.id
            result = await self.runner.run(definition, job.inputs, context_id=context.id)
            run_context = result.context_id if result.context_id is not None else run_context

            if result.success:
                status = "success"
                envelope = {"success": True, "result": result.to_dict()}
            else:
                error = result.error
                envelope = {
                    "success": False,
                    "error": result.error,
                    "errorType": result.error_type,
                    "step": result.step,
                }
        except AutopilotError as e:
            error = e.message
            envelope = _failure(e)
        except Exception as e:
            error = str(e) or type(e).__name__
            raise
        finally:
            await self._record_run(job_id, trigger_type, reason, run_context, status, error, started_at)

        logger.info("job_finished", job_id=job_id, status=status, error=error)
        return envelope

    async def _record_run(
        self,
        job_id: str,
        trigger_type: str,
        reason: Optional[str],
        context_id: Optional[int],
        status: str,
        error: Optional[str],
        started_at: float,
    ) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            # Removed while running
            return

        at = now_ms()
        job.last_run_at = at
        job.last_status = status
        job.last_error = error
        job.last_trigger = LastTrigger(type=trigger_type, reason=reason, at=at, context_id=context_id)

        if job.schedule_type == "atTime":
            job.enabled = False
            self._clear_timer(job_id)

        await self._save(job)
        if self.state is not None:
            await self.state.record_job_run(
                job_id=job_id,
                trigger_type=trigger_type,
                status=status,
                started_at=started_at,
                reason=reason,
                context_id=context_id,
                error=error,
            )

    async def _resolve_target(self, job: Job, context_id: Optional[int]) -> ContextInfo:
        """Explicit context, then fixed tab, then active context, then any matching context."""
        if context_id is not None:
            context = await self.driver.get_context(context_id)
            if context is not None:
                return context

        if job.target == "fixedTab" and job.tab_id is not None:
            context = await self.driver.get_context(job.tab_id)
            if context is None:
                raise TargetResolutionError(
                    f"Fixed context {job.tab_id} is no longer open",
                    function_name=job.function_name,
                )
            return context

        filters = job.url_filters()
        active = await self.driver.active_context()
        if active is not None and not is_internal_url(active.url):
            if not filters or matches_url_filter(filters, active.url):
                return active

        for context in await self.driver.list_contexts():
            if is_internal_url(context.url):
                continue
            if not filters or matches_url_filter(filters, context.url):
                return context

        raise TargetResolutionError(
            "No suitable context found for scheduled run",
            function_name=job.function_name,
        )

    # ==================== Keyword jobs ====================

    async def evaluate_keyword_jobs(self, reason: str = "tab-updated") -> list[dict[str, Any]]:
        """
        Run keyword jobs whose keyword appears on the active page.

        Only one evaluation runs at a time; overlapping calls return
        immediately with no results.
        """
        if self._keyword_in_flight:
            return []

        candidates = [
            job for job in self._jobs.values()
            if job.enabled and job.schedule_type == "keyword" and (job.keyword or "").strip()
        ]
        if not candidates:
            return []

        self._keyword_in_flight = True
        try:
            context = await self.driver.active_context()
            if context is None or is_internal_url(context.url):
                return []

            limit = self.config.keyword_snapshot_chars
            text = (await self.driver.page_text(context.id, limit))[:limit]
            if not text:
                return []

            outcomes = []
            for job in candidates:
                if job.id not in self._jobs:
                    continue
                if not matches_url_filter(job.url_filters(), context.url):
                    continue
                if not keyword_matches(text, job.keyword, job.case_sensitive, job.match_whole_word):
                    continue
                if job.trigger_mode == "oncePerUrl" and job.last_keyword_url == context.url:
                    continue

                outcome = await self.on_fire(job.id, "keyword", reason=reason, context_id=context.id)
                current = self._jobs.get(job.id)
                if current is not None and (outcome.get("success") or outcome.get("skipped")):
                    current.last_keyword_url = context.url
                    await self._save(current)
                outcomes.append({"jobId": job.id, **outcome})
            return outcomes
        finally:
            self._keyword_in_flight = False

    # ==================== DOM-change jobs ====================

    def _debounce_for(self, job: Job) -> int:
        value = job.debounce_ms if job.debounce_ms is not None else self.config.default_debounce_ms
        return max(self.config.min_debounce_ms, min(self.config.max_debounce_ms, int(value)))

    async def handle_dom_change(
        self,
        job_id: str,
        context_id: int,
        url: Optional[str] = None,
        reason: str = "dom-change",
    ) -> dict[str, Any]:
        """Handle a DOM mutation event reported for one job in one context."""
        job = self._jobs.get(job_id)
        if job is None or not job.enabled or job.schedule_type != "domChange":
            return _ignored("inactive")

        if url is None:
            context = await self.driver.get_context(context_id)
            url = context.url if context is not None else None
        if is_internal_url(url) or not matches_url_filter(job.url_filters(), url):
            return _ignored("url-filtered")

        if job.target == "fixedTab" and job.tab_id != context_id:
            return _ignored("context-mismatch")
        if job.target == "activeTab":
            active = await self.driver.active_context()
            if active is None or active.id != context_id:
                return _ignored("context-inactive")

        if job.trigger_mode == "oncePerUrl" and job.last_dom_change_url == url:
            return _ignored("already-ran-for-url")

        debounce_ms = self._debounce_for(job)
        rejection = self.guard.try_begin(job_id, context_id, debounce_ms)
        if rejection is not None:
            logger.debug("dom_trigger_rejected", job_id=job_id, context_id=context_id, reason=rejection.reason)
            return {
                "success": False,
                "skipped": True,
                "reason": rejection.reason,
                "error": rejection.message,
            }

        try:
            outcome = await self.on_fire(job_id, "domChange", reason=reason, context_id=context_id)
            current = self._jobs.get(job_id)
            if current is not None and outcome.get("success"):
                current.last_dom_change_url = url
                await self._save(current)
            return outcome
        finally:
            if job_id in self._jobs:
                self.guard.finish(job_id, context_id, debounce_ms)
            else:
                self.guard.clear_job(job_id)

    async def sync_dom_watchers(self, reason: str = "sync") -> None:
        """Push the eligible DOM watcher configs to every scriptable context."""
        jobs = [
            job for job in self._jobs.values()
            if job.enabled and job.schedule_type == "domChange"
        ]

        for context in await self.driver.list_contexts():
            if is_internal_url(context.url):
                continue
            watchers = [
                DomWatcherConfig(
                    job_id=job.id,
                    selector=job.dom_selector or "body",
                    debounce_ms=self._debounce_for(job),
                    min_added_nodes=job.min_added_nodes or 1,
                    run_on_page_load=job.run_on_page_load is not False,
                    run_on_scroll=job.run_on_scroll is True,
                )
                for job in jobs
                if (job.target != "fixedTab" or job.tab_id == context.id)
                and matches_url_filter(job.url_filters(), context.url)
            ]
            result = await self.driver.watch_dom_changes(context.id, watchers)
            if not result.success:
                logger.debug("dom_watcher_sync_failed", context_id=context.id, error=result.error)

        logger.debug("dom_watchers_synced", reason=reason, jobs=len(jobs))

    def on_context_closed(self, context_id: int) -> None:
        self.guard.clear_context(context_id)

    # ==================== Timers ====================

    def _schedule_timer(self, job: Job) -> None:
        """
        Arm the job's timer, replacing any existing one.

        At-time jobs whose time has passed are disabled instead.

        Raises:
            ValidationError: interval below one minute
        """
        self._clear_timer(job.id)
        if not job.enabled:
            return

        if job.schedule_type == "interval":
            minutes = job.interval_minutes or self.config.default_interval_minutes
            if minutes < 1:
                raise ValidationError("intervalMinutes must be at least 1", field="intervalMinutes")
            task = asyncio.create_task(self._interval_loop(job.id, minutes * 60), name=timer_name(job.id))
        elif job.schedule_type == "atTime":
            if job.at_time_ms is None or job.at_time_ms <= now_ms():
                job.enabled = False
                job.last_error = "Scheduled time is in the past"
                logger.info("at_time_job_expired", job_id=job.id)
                return
            delay = (job.at_time_ms - now_ms()) / 1000
            task = asyncio.create_task(self._at_time_fire(job.id, delay), name=timer_name(job.id))
        else:
            return

        self._timers[job.id] = task

    def _clear_timer(self, job_id: str) -> None:
        task = self._timers.pop(job_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _interval_loop(self, job_id: str, period_s: float) -> None:
        while True:
            await asyncio.sleep(period_s)
            try:
                await self.on_fire(job_id, "interval", reason="timer")
            except Exception:
                logger.exception("scheduled_run_failed", job_id=job_id)

    async def _at_time_fire(self, job_id: str, delay_s: float) -> None:
        await asyncio.sleep(max(0.0, delay_s))
        try:
            await self.on_fire(job_id, "atTime", reason="timer")
        except Exception:
            logger.exception("scheduled_run_failed", job_id=job_id)
        finally:
            if self._timers.get(job_id) is asyncio.current_task():
                del self._timers[job_id]

        # The timer is consumed even when the run was skipped
        job = self._jobs.get(job_id)
        if job is not None and job.enabled:
            job.enabled = False
            await self._save(job)

    # ==================== Building ====================

    def _build_job(self, spec: JobSpec, context_id: Optional[int]) -> Job:
        if not spec.function_name:
            raise ValidationError("functionName is required", field="functionName")

        job_id = (spec.id or "").strip() or _new_job_id()
        if job_id in self._jobs:
            raise ValidationError(f"Job id already exists: {job_id}", field="id")

        target = "fixedTab" if spec.target == "fixedTab" else "activeTab"
        tab_id = spec.tab_id
        if tab_id is None and target == "fixedTab":
            tab_id = context_id

        trigger_mode = spec.trigger_mode
        if trigger_mode not in ("oncePerUrl", "everyMatch"):
            trigger_mode = "everyMatch" if spec.schedule_type == "domChange" else "oncePerUrl"

        try:
            cooldown = max(0.0, float(spec.cooldown_minutes or 0))
        except (TypeError, ValueError):
            raise ValidationError("cooldownMinutes must be a number", field="cooldownMinutes")

        fields: dict[str, Any] = {
            "id": job_id,
            "name": spec.job_name or f"{spec.function_name}_{spec.schedule_type}_{job_id[-4:]}",
            "function_name": spec.function_name,
            "inputs": spec.inputs,
            "schedule_type": spec.schedule_type,
            "enabled": spec.enabled,
            "created_at": now_ms(),
            "target": target,
            "tab_id": tab_id,
            "url_pattern": (spec.url_pattern or "").strip() or None,
            "url_patterns": [
                p.strip() for p in (spec.url_patterns or [])
                if isinstance(p, str) and p.strip()
            ],
            "cooldown_minutes": cooldown,
            "trigger_mode": trigger_mode,
        }

        if spec.schedule_type == "interval":
            raw = spec.interval_minutes
            try:
                minutes = float(raw) if raw is not None else float(self.config.default_interval_minutes)
            except (TypeError, ValueError):
                minutes = math.nan
            if not math.isfinite(minutes) or minutes < 1:
                raise ValidationError("intervalMinutes must be at least 1", field="intervalMinutes")
            fields["interval_minutes"] = minutes

        elif spec.schedule_type == "atTime":
            at_ms = parse_at_time(spec.at_time)
            if at_ms is None:
                raise ValidationError("A valid atTime is required", field="atTime")
            if at_ms <= now_ms():
                raise ValidationError("atTime must be in the future", field="atTime")
            fields["at_time_ms"] = at_ms
            fields["at_time_iso"] = _iso_from_ms(at_ms)

        elif spec.schedule_type == "keyword":
            keyword = (spec.keyword or "").strip()
            if not keyword:
                raise ValidationError("keyword is required for keyword jobs", field="keyword")
            fields.update(
                keyword=keyword,
                case_sensitive=spec.case_sensitive,
                match_whole_word=spec.match_whole_word,
                target="activeTab",
                tab_id=None,
            )

        elif spec.schedule_type == "domChange":
            try:
                debounce = int(spec.debounce_ms) if spec.debounce_ms is not None else self.config.default_debounce_ms
            except (TypeError, ValueError):
                debounce = self.config.default_debounce_ms
            try:
                min_added = int(spec.min_added_nodes) if spec.min_added_nodes is not None else 1
            except (TypeError, ValueError):
                min_added = 1
            if target == "fixedTab" and tab_id is None:
                raise ValidationError("fixedTab domChange jobs require a tabId", field="tabId")
            fields.update(
                dom_selector=(spec.dom_selector or "").strip() or "body",
                debounce_ms=max(self.config.min_debounce_ms, min(self.config.max_debounce_ms, debounce)),
                min_added_nodes=max(1, min_added),
                run_on_page_load=spec.run_on_page_load,
                run_on_scroll=spec.run_on_scroll,
            )

        return Job(**fields)

    async def _save(self, job: Job) -> None:
        if self.state is not None:
            await self.state.save_job(job)
