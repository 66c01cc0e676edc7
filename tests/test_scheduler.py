"""Tests for the trigger scheduler."""

import asyncio

import pytest

from autopilot.core.config import SchedulerConfig
from autopilot.core.models import FunctionDefinition
from autopilot.orchestrator.matching import now_ms
from autopilot.orchestrator.scheduler import TriggerScheduler, timer_name
from autopilot.tools.registry import register_builtin_capabilities


@pytest.fixture
async def check_price(store, driver):
    """Stored CheckPrice workflow reading the price off the page."""
    driver.extracts[".price"] = "$19.99"
    await store.upsert({"name": "CheckPrice", "steps": [{"type": "extract", "selector": ".price"}]})
    return "CheckPrice"


@pytest.fixture
async def slow_check(store, driver):
    """Workflow that takes long enough for triggers to overlap."""
    driver.extracts[".feed"] = "3 new posts"
    await store.upsert({
        "name": "ReadFeed",
        "steps": [
            {"type": "wait", "condition": "time", "value": 100},
            {"type": "extract", "selector": ".feed"},
        ],
    })
    return "ReadFeed"


class TestJobCreation:
    """Test job validation and timers."""

    @pytest.mark.asyncio
    async def test_interval_job(self, scheduler, check_price):
        """A 30 minute CheckPrice job gets a timer and a sanitized record."""
        envelope = await scheduler.create({
            "functionName": check_price,
            "scheduleType": "interval",
            "intervalMinutes": 30,
        })

        assert envelope["success"]
        job = envelope["job"]
        assert job["intervalMinutes"] == 30
        assert job["enabled"] is True
        assert job["name"].startswith("CheckPrice_interval_")
        assert timer_name(job["id"]) in scheduler.active_timers()
        assert len(scheduler.list_jobs()["jobs"]) == 1

    @pytest.mark.asyncio
    async def test_interval_below_one_minute_rejected(self, scheduler):
        envelope = await scheduler.create({"functionName": "F", "scheduleType": "interval", "intervalMinutes": 0.5})

        assert not envelope["success"]
        assert envelope["errorType"] == "ValidationError"
        assert envelope["field"] == "intervalMinutes"
        assert scheduler.list_jobs()["jobs"] == []

    @pytest.mark.asyncio
    async def test_past_at_time_rejected(self, scheduler):
        envelope = await scheduler.create({"functionName": "F", "scheduleType": "atTime", "atTime": now_ms() - 60_000})

        assert not envelope["success"]
        assert envelope["error"] == "atTime must be in the future"

    @pytest.mark.asyncio
    async def test_at_time_epoch_ms_field(self, scheduler, check_price):
        when = now_ms() + 60_000

        envelope = await scheduler.create({
            "functionName": check_price,
            "scheduleType": "atTime",
            "atTimeEpochMs": when,
        })

        assert envelope["success"]
        job = scheduler.get_job(envelope["job"]["id"])
        assert job.at_time_ms == when
        assert timer_name(job.id) in scheduler.active_timers()

    @pytest.mark.asyncio
    async def test_keyword_required(self, scheduler):
        envelope = await scheduler.create({"functionName": "F", "scheduleType": "keyword", "keyword": "  "})

        assert envelope["field"] == "keyword"

    @pytest.mark.asyncio
    async def test_function_name_required(self, scheduler):
        envelope = await scheduler.create({"scheduleType": "interval"})

        assert envelope["field"] == "functionName"

    @pytest.mark.asyncio
    async def test_keyword_job_forced_to_active_tab(self, scheduler):
        envelope = await scheduler.create(
            {"functionName": "F", "scheduleType": "keyword", "keyword": "sale", "target": "fixedTab"},
            context_id=1,
        )

        assert envelope["job"]["target"] == "activeTab"
        assert "tabId" not in envelope["job"]

    @pytest.mark.asyncio
    async def test_dom_change_defaults(self, scheduler, driver):
        envelope = await scheduler.create({"functionName": "F", "scheduleType": "domChange", "debounceMs": 50})

        job = envelope["job"]
        assert job["triggerMode"] == "everyMatch"
        assert job["domSelector"] == "body"
        assert job["debounceMs"] == 200
        assert [w.job_id for w in driver.watchers[1]] == [job["id"]]

    @pytest.mark.asyncio
    async def test_run_on_create(self, scheduler, check_price):
        envelope = await scheduler.create({
            "functionName": check_price,
            "scheduleType": "interval",
            "intervalMinutes": 5,
            "runNow": True,
        })

        assert envelope["runResult"]["success"]
        assert envelope["runResult"]["result"]["data"] == ["$19.99"]
        assert envelope["job"]["lastStatus"] == "success"
        assert envelope["job"]["lastTrigger"]["type"] == "manual"


class TestFiring:
    """Test the shared firing path."""

    @pytest.mark.asyncio
    async def test_at_time_fires_once_then_disables(self, scheduler, driver, check_price):
        envelope = await scheduler.create({
            "functionName": check_price,
            "scheduleType": "atTime",
            "atTime": now_ms() + 300,
        })
        job_id = envelope["job"]["id"]

        await asyncio.sleep(0.8)

        job = scheduler.get_job(job_id)
        assert len(driver.calls_of("extract")) == 1
        assert job.enabled is False
        assert job.last_status == "success"
        assert job.last_trigger.type == "atTime"
        assert scheduler.active_timers() == []

    @pytest.mark.asyncio
    async def test_cooldown_skips_manual_run(self, scheduler, driver, check_price):
        envelope = await scheduler.create({
            "functionName": check_price,
            "scheduleType": "interval",
            "intervalMinutes": 5,
            "cooldownMinutes": 10,
        })
        job_id = envelope["job"]["id"]

        first = await scheduler.run_now(job_id)
        second = await scheduler.run_now(job_id)

        assert first["success"]
        assert second == {
            "success": False,
            "skipped": True,
            "reason": "cooldown",
            "error": "Job is in cooldown window",
        }
        assert len(driver.calls_of("extract")) == 1

    @pytest.mark.asyncio
    async def test_cooldown_blocks_keyword_retrigger(self, scheduler, driver, check_price):
        driver.texts[1] = "Flash sale"
        envelope = await scheduler.create({
            "functionName": check_price,
            "scheduleType": "keyword",
            "keyword": "sale",
            "triggerMode": "everyMatch",
            "cooldownMinutes": 10,
        })
        job_id = envelope["job"]["id"]

        first = await scheduler.evaluate_keyword_jobs()
        second = await scheduler.evaluate_keyword_jobs()

        assert first[0]["success"]
        assert second == [{
            "jobId": job_id,
            "success": False,
            "skipped": True,
            "reason": "cooldown",
            "error": "Job is in cooldown window",
        }]
        assert len(driver.calls_of("extract")) == 1

    @pytest.mark.asyncio
    async def test_enable_expired_at_time_rejected(self, scheduler, driver, check_price):
        envelope = await scheduler.create({
            "functionName": check_price,
            "scheduleType": "atTime",
            "atTime": now_ms() + 60_000,
        })
        job_id = envelope["job"]["id"]
        await scheduler.disable(job_id)
        scheduler.get_job(job_id).at_time_ms = now_ms() - 1_000

        result = await scheduler.enable(job_id)

        assert not result["success"]
        assert result["errorType"] == "ValidationError"
        assert result["error"] == "atTime must be in the future"
        assert scheduler.get_job(job_id).enabled is False
        assert scheduler.active_timers() == []

    @pytest.mark.asyncio
    async def test_disabled_job_does_not_run(self, scheduler, driver, check_price):
        envelope = await scheduler.create({"functionName": check_price, "intervalMinutes": 5})
        job_id = envelope["job"]["id"]
        await scheduler.disable(job_id)

        result = await scheduler.run_now(job_id)

        assert result == {"success": False, "error": "Job is disabled"}
        assert driver.calls_of("extract") == []
        assert scheduler.active_timers() == []

    @pytest.mark.asyncio
    async def test_missing_function_recorded_as_error(self, scheduler):
        envelope = await scheduler.create({"functionName": "Ghost", "intervalMinutes": 5})
        job_id = envelope["job"]["id"]

        result = await scheduler.run_now(job_id)

        assert not result["success"]
        assert result["errorType"] == "NotFoundError"
        assert scheduler.get_job(job_id).last_status == "error"

    @pytest.mark.asyncio
    async def test_step_failure_reports_step(self, scheduler, driver, store):
        driver.failing.add("#buy")
        await store.upsert({"name": "Buy", "steps": [{"type": "note"}, {"type": "click", "selector": "#buy"}]})
        envelope = await scheduler.create({"functionName": "Buy", "intervalMinutes": 5})

        result = await scheduler.run_now(envelope["job"]["id"])

        assert result["step"] == 1
        assert result["errorType"] == "StepExecutionError"

    @pytest.mark.asyncio
    async def test_fixed_tab_gone(self, scheduler, driver, check_price):
        driver.add_context(2, "https://shop.example.com/item/7")
        envelope = await scheduler.create(
            {"functionName": check_price, "intervalMinutes": 5, "target": "fixedTab"},
            context_id=2,
        )
        assert envelope["job"]["tabId"] == 2
        driver.close_context(2)

        result = await scheduler.run_now(envelope["job"]["id"])

        assert result["errorType"] == "TargetResolutionError"
        assert driver.calls_of("extract") == []

    @pytest.mark.asyncio
    async def test_url_filter_picks_matching_context(self, scheduler, driver, check_price):
        driver.add_context(2, "https://other.example.org/")
        driver.active_id = 2
        envelope = await scheduler.create({
            "functionName": check_price,
            "intervalMinutes": 5,
            "urlPattern": "https://shop.example.com/*",
        })

        result = await scheduler.run_now(envelope["job"]["id"])

        assert result["success"]
        assert driver.calls_of("extract")[0][1] == 1

    @pytest.mark.asyncio
    async def test_run_history_recorded(self, scheduler, state, check_price):
        envelope = await scheduler.create({"functionName": check_price, "intervalMinutes": 5})
        job_id = envelope["job"]["id"]

        await scheduler.run_now(job_id)

        runs = await state.get_job_runs(job_id)
        assert [(r.trigger_type, r.status) for r in runs] == [("manual", "success")]


class TestKeywordJobs:
    """Test keyword triggers."""

    @pytest.mark.asyncio
    async def test_once_per_url(self, scheduler, driver, check_price):
        driver.texts[1] = "Big SALE today only"
        await scheduler.create({"functionName": check_price, "scheduleType": "keyword", "keyword": "sale"})

        first = await scheduler.evaluate_keyword_jobs()
        second = await scheduler.evaluate_keyword_jobs()

        assert len(first) == 1 and first[0]["success"]
        assert second == []
        assert len(driver.calls_of("extract")) == 1

        driver.contexts[1]["url"] = "https://shop.example.com/item/43"
        third = await scheduler.evaluate_keyword_jobs("tab-updated")
        assert len(third) == 1

    @pytest.mark.asyncio
    async def test_every_match(self, scheduler, driver, check_price):
        driver.texts[1] = "Big SALE today only"
        await scheduler.create({
            "functionName": check_price,
            "scheduleType": "keyword",
            "keyword": "sale",
            "triggerMode": "everyMatch",
        })

        await scheduler.evaluate_keyword_jobs()
        await scheduler.evaluate_keyword_jobs()

        assert len(driver.calls_of("extract")) == 2

    @pytest.mark.asyncio
    async def test_case_and_word_rules(self, scheduler, driver, check_price):
        driver.texts[1] = "wholesale prices"
        await scheduler.create({
            "functionName": check_price,
            "scheduleType": "keyword",
            "keyword": "sale",
            "matchWholeWord": True,
        })
        await scheduler.create({
            "functionName": check_price,
            "scheduleType": "keyword",
            "keyword": "Wholesale",
            "caseSensitive": True,
        })

        assert await scheduler.evaluate_keyword_jobs() == []

    @pytest.mark.asyncio
    async def test_internal_page_ignored(self, scheduler, driver, check_price):
        driver.add_context(1, "chrome://newtab/", active=True)
        driver.texts[1] = "sale"
        await scheduler.create({"functionName": check_price, "scheduleType": "keyword", "keyword": "sale"})

        assert await scheduler.evaluate_keyword_jobs() == []


class TestDomChangeJobs:
    """Test DOM-change triggers and their guards."""

    async def _create(self, scheduler, function_name, **extra):
        envelope = await scheduler.create({
            "functionName": function_name,
            "scheduleType": "domChange",
            "debounceMs": 200,
            **extra,
        }, context_id=1)
        return envelope["job"]["id"]

    @pytest.mark.asyncio
    async def test_concurrent_triggers_run_once(self, scheduler, driver, slow_check):
        job_id = await self._create(scheduler, slow_check)

        outcomes = await asyncio.gather(
            scheduler.handle_dom_change(job_id, 1),
            scheduler.handle_dom_change(job_id, 1),
        )

        assert sorted(bool(o["success"]) for o in outcomes) == [False, True]
        rejected = next(o for o in outcomes if not o["success"])
        assert rejected["skipped"] is True
        assert rejected["reason"] == "in-flight"
        assert len(driver.calls_of("extract")) == 1

    @pytest.mark.asyncio
    async def test_suppression_after_run(self, scheduler, driver, slow_check):
        job_id = await self._create(scheduler, slow_check)

        first = await scheduler.handle_dom_change(job_id, 1)
        second = await scheduler.handle_dom_change(job_id, 1)

        assert first["success"]
        assert second["reason"] == "suppressed"
        assert scheduler.guard.suppression_ms(200) == 1000

    @pytest.mark.asyncio
    async def test_inactive_context_ignored(self, scheduler, driver, slow_check):
        driver.add_context(2, "https://shop.example.com/item/8")
        job_id = await self._create(scheduler, slow_check)

        outcome = await scheduler.handle_dom_change(job_id, 2)

        assert outcome == {"success": False, "ignored": True, "reason": "context-inactive"}

    @pytest.mark.asyncio
    async def test_fixed_tab_mismatch_ignored(self, scheduler, driver, slow_check):
        driver.add_context(2, "https://shop.example.com/item/8")
        job_id = await self._create(scheduler, slow_check, target="fixedTab")

        outcome = await scheduler.handle_dom_change(job_id, 2)

        assert outcome["reason"] == "context-mismatch"
        assert [w.job_id for w in driver.watchers[1]] == [job_id]
        assert driver.watchers[2] == []

    @pytest.mark.asyncio
    async def test_url_filter(self, scheduler, driver, slow_check):
        job_id = await self._create(scheduler, slow_check, urlPattern="https://news.example.com/*")

        outcome = await scheduler.handle_dom_change(job_id, 1)

        assert outcome["reason"] == "url-filtered"
        assert driver.watchers[1] == []

    @pytest.mark.asyncio
    async def test_once_per_url(self, scheduler, driver, slow_check):
        job_id = await self._create(scheduler, slow_check, triggerMode="oncePerUrl")

        first = await scheduler.handle_dom_change(job_id, 1)
        scheduler.guard.clear()
        second = await scheduler.handle_dom_change(job_id, 1)

        assert first["success"]
        assert second["reason"] == "already-ran-for-url"

    @pytest.mark.asyncio
    async def test_closed_context_releases_guard(self, scheduler, driver, slow_check):
        job_id = await self._create(scheduler, slow_check)
        await scheduler.handle_dom_change(job_id, 1)

        scheduler.on_context_closed(1)

        assert scheduler.guard.check(job_id, 1, 200) is None

    @pytest.mark.asyncio
    async def test_cooldown_blocks_dom_retrigger(self, scheduler, driver, slow_check):
        job_id = await self._create(scheduler, slow_check, cooldownMinutes=10)

        first = await scheduler.handle_dom_change(job_id, 1)
        scheduler.guard.clear()
        second = await scheduler.handle_dom_change(job_id, 1)

        assert first["success"]
        assert second["skipped"] is True
        assert second["reason"] == "cooldown"
        assert len(driver.calls_of("extract")) == 1

    @pytest.mark.asyncio
    async def test_disable_and_enable_purge_guard(self, scheduler, driver, slow_check):
        job_id = await self._create(scheduler, slow_check)
        await scheduler.handle_dom_change(job_id, 1)
        assert scheduler.guard.check(job_id, 1, 200).reason == "suppressed"

        await scheduler.disable(job_id)
        await scheduler.enable(job_id)

        assert scheduler.guard.check(job_id, 1, 200) is None
        again = await scheduler.handle_dom_change(job_id, 1)
        assert again["success"]

    @pytest.mark.asyncio
    async def test_remove_and_clear_purge_guard(self, scheduler, driver, slow_check):
        first_id = await self._create(scheduler, slow_check)
        second_id = await self._create(scheduler, slow_check)
        await scheduler.handle_dom_change(first_id, 1)
        await scheduler.handle_dom_change(second_id, 1)

        await scheduler.remove(first_id)
        assert scheduler.guard.check(first_id, 1, 200) is None
        assert scheduler.guard.check(second_id, 1, 200) is not None

        await scheduler.clear()
        assert scheduler.guard.check(second_id, 1, 200) is None
        assert scheduler.guard.stats()["tracked"] == 0


class TestCommands:
    """Test the string-action command surface."""

    @pytest.mark.asyncio
    async def test_create_list_remove(self, scheduler):
        created = await scheduler.execute_command({
            "action": "create",
            "functionName": "CheckPrice",
            "scheduleType": "interval",
            "intervalMinutes": 15,
        })
        job_id = created["job"]["id"]

        listed = await scheduler.execute_command({"action": "LIST"})
        assert [j["id"] for j in listed["jobs"]] == [job_id]

        removed = await scheduler.execute_command({"action": "delete", "jobId": job_id})
        assert removed == {"success": True, "removedId": job_id}
        assert scheduler.active_timers() == []

    @pytest.mark.asyncio
    async def test_unknown_action(self, scheduler):
        result = await scheduler.execute_command({"action": "explode"})

        assert result["errorType"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_remove_unknown_job(self, scheduler):
        result = await scheduler.execute_command({"action": "remove", "jobId": "job_missing"})

        assert result["errorType"] == "NotFoundError"

    @pytest.mark.asyncio
    async def test_clear(self, scheduler):
        await scheduler.create({"functionName": "A", "intervalMinutes": 5})
        await scheduler.create({"functionName": "B", "intervalMinutes": 5})

        result = await scheduler.execute_command({"action": "clear"})

        assert result == {"success": True, "cleared": 2}
        assert scheduler.active_timers() == []

    @pytest.mark.asyncio
    async def test_scheduler_step_in_workflow(self, scheduler, runner, registry, scratch):
        register_builtin_capabilities(registry, scratch, scheduler)
        await scheduler.create({"functionName": "A", "intervalMinutes": 5})
        definition = FunctionDefinition.parse({
            "name": "ListJobs",
            "steps": [{"type": "scheduler", "action": "list"}],
        })

        result = await runner.run(definition, context_id=1)

        assert result.success
        assert len(result.data["jobs"]) == 1


class TestRestart:
    """Test timer re-derivation from persisted jobs."""

    @pytest.mark.asyncio
    async def test_interval_timer_rearmed(self, scheduler, state, store, runner, driver):
        envelope = await scheduler.create({"functionName": "A", "intervalMinutes": 5})
        job_id = envelope["job"]["id"]
        await scheduler.shutdown()

        restarted = TriggerScheduler(SchedulerConfig(), state, store, runner, driver)
        await restarted.initialize()
        try:
            assert timer_name(job_id) in restarted.active_timers()
        finally:
            await restarted.shutdown()

    @pytest.mark.asyncio
    async def test_expired_at_time_disabled(self, scheduler, state, store, runner, driver):
        envelope = await scheduler.create({"functionName": "A", "scheduleType": "atTime", "atTime": now_ms() + 400})
        job_id = envelope["job"]["id"]
        await scheduler.shutdown()
        await asyncio.sleep(0.5)

        restarted = TriggerScheduler(SchedulerConfig(), state, store, runner, driver)
        await restarted.initialize()
        try:
            job = restarted.get_job(job_id)
            assert job.enabled is False
            assert job.last_error == "Scheduled time is in the past"
            assert restarted.active_timers() == []
        finally:
            await restarted.shutdown()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
