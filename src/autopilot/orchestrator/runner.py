"""Workflow runner: executes a function definition's steps in order against one context."""

import copy
import re
from typing import Any, Optional

import structlog

from ..browser.driver import ContextInfo, PageDriver
from ..core.config import RunnerConfig
from ..core.errors import (
    AbortError,
    AutopilotError,
    NotFoundError,
    StepExecutionError,
    TargetResolutionError,
)
from ..core.models import FunctionDefinition, RunResult, parse_step, step_to_dict
from ..library.backend import BackendFunctionClient
from ..library.functions import WorkflowStore
from .cancellation import CancellationToken
from .interpreter import StepInterpreter, StepScope
from .matching import is_http_url, is_internal_url, matches_url_filter, url_origin


logger = structlog.get_logger()

_TOKEN = re.compile(r"\{\{(\w+)\}\}")

# Step types that only make sense against an already-open page
_CONTEXT_REQUIRED_TYPES = frozenset({
    "click", "type", "pressKey", "scroll", "extract", "extractAttribute",
    "getElements", "modifySite", "hover", "waitForStableContent",
    "literalClick", "literalType", "literalKeydown", "returnValue",
})


def substitute(value: Any, inputs: dict[str, Any]) -> Any:
    """
    Replace ``{{name}}`` tokens from inputs, recursively.

    A string that is exactly one token takes the input's value as-is;
    otherwise values are spliced in as text. Unknown tokens stay verbatim.
    """
    if isinstance(value, str):
        whole = _TOKEN.fullmatch(value)
        if whole and inputs.get(whole.group(1)) is not None:
            return inputs[whole.group(1)]

        def replace(match: re.Match) -> str:
            found = inputs.get(match.group(1))
            return match.group(0) if found is None else str(found)

        return _TOKEN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: substitute(v, inputs) for k, v in value.items()}
    elif isinstance(value, list):
        return [substitute(v, inputs) for v in value]
    return value


def needs_current_page(definition: FunctionDefinition) -> bool:
    """Whether the workflow operates on the page the user already has open."""
    if definition.requires_current_tab:
        return True
    if (definition.navigation_strategy or "").lower() == "current-tab":
        return True

    first = next((s for s in definition.steps if s.type != "wait"), None)
    if first is None or first.type == "navigate":
        return False
    return first.type in _CONTEXT_REQUIRED_TYPES


def bootstrap_url(definition: FunctionDefinition, default: str = "about:blank") -> str:
    """URL for a freshly created context: start URL, else first http(s) URL pattern."""
    candidates = []
    if definition.start_url:
        candidates.append(definition.start_url)
    candidates.extend(p.replace("*", "") for p in definition.url_patterns if isinstance(p, str))

    for raw in candidates:
        candidate = raw.strip()
        if candidate and not is_internal_url(candidate) and is_http_url(candidate):
            return candidate
    return default


def _pattern_origin(patterns: list[str]) -> Optional[str]:
    for pattern in patterns:
        origin = url_origin(pattern.replace("*", "x"))
        if origin:
            return origin
    return None


class WorkflowRunner:
    """
    Runs function definitions step by step.

    Features:
    - Target context resolution (explicit, current page, fresh context)
    - ``{{param}}`` substitution and navigation URL fallbacks per step
    - First failing step aborts the run with its 0-based index
    - Result aggregation across steps
    - Sub-workflow composition through the function library and remote backend
    - Cooperative cancellation before every step
    """

    def __init__(
        self,
        driver: PageDriver,
        store: WorkflowStore,
        interpreter: StepInterpreter,
        config: Optional[RunnerConfig] = None,
        backend: Optional[BackendFunctionClient] = None,
    ):
        self.driver = driver
        self.store = store
        self.interpreter = interpreter
        self.config = config or RunnerConfig()
        self.backend = backend
        interpreter.bind_runner(self)

    async def run_by_name(
        self,
        name: str,
        inputs: Optional[dict[str, Any]] = None,
        context_id: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RunResult:
        """Run a stored workflow by name."""
        definition = self.store.get(name)
        if definition is None:
            return RunResult(
                success=False,
                error=f'Function "{name}" not found',
                error_type=NotFoundError.__name__,
            )
        return await self.run(definition, inputs, context_id, cancel_token)

    async def run(
        self,
        definition: FunctionDefinition,
        inputs: Optional[dict[str, Any]] = None,
        context_id: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
        depth: int = 0,
    ) -> RunResult:
        """
        Execute a workflow.

        Args:
            definition: Workflow to run
            inputs: Values for ``{{name}}`` tokens; declared defaults fill gaps
            context_id: Explicit target context
            cancel_token: Polled before every step
            depth: Sub-workflow nesting level

        Returns:
            RunResult; failures carry the 0-based index of the failing step
        """
        try:
            inputs = definition.resolve_inputs(inputs)
            if cancel_token is not None and cancel_token.cancelled:
                raise AbortError(cancel_token.reason or "Stopped by user")
            context = await self.resolve_target(definition, context_id)
        except AutopilotError as e:
            logger.warning("workflow_not_started", function=definition.name, error=e.message)
            return RunResult(
                success=False,
                error=e.message,
                error_type=type(e).__name__,
                aborted=isinstance(e, AbortError),
            )

        scope = StepScope(
            context_id=context.id,
            inputs=inputs,
            cancel_token=cancel_token,
            depth=depth,
            function_name=definition.name,
        )
        logger.info(
            "workflow_started",
            function=definition.name,
            context_id=context.id,
            steps=len(definition.steps),
            depth=depth,
        )

        if definition.url_patterns and not matches_url_filter(definition.url_patterns, context.url):
            logger.debug("workflow_url_mismatch", function=definition.name, url=context.url)

        data: Any = None
        texts: list[str] = []
        screenshots: list[str] = []

        for i, original in enumerate(definition.steps):
            try:
                scope.check_cancelled()
                step = await self._prepare_step(original, definition, inputs, scope)
                result = await self.interpreter.execute(step, scope)
            except AbortError as e:
                logger.info("workflow_aborted", function=definition.name, step=i, reason=e.message)
                return RunResult(
                    success=False,
                    error=e.message,
                    error_type=AbortError.__name__,
                    step=i,
                    aborted=True,
                    context_id=scope.context_id,
                )
            except AutopilotError as e:
                result = None
                error, error_type = e.message, type(e).__name__
            else:
                error, error_type = result.error, result.error_type

            if result is None or not result.success:
                logger.warning(
                    "workflow_step_failed",
                    function=definition.name,
                    step=i,
                    step_type=original.type,
                    error=error,
                )
                return RunResult(
                    success=False,
                    error=error or "Unknown error",
                    error_type=error_type or StepExecutionError.__name__,
                    step=i,
                    context_id=scope.context_id,
                )

            if result.next_context_id is not None and result.next_context_id != scope.context_id:
                scope.context_id = result.next_context_id

            if result.extracted is not None:
                if data is None:
                    data = []
                elif not isinstance(data, list):
                    data = [data]
                if isinstance(result.extracted, list):
                    data.extend(result.extracted)
                else:
                    data.append(result.extracted)
            elif result.data is not None:
                if data is None:
                    data = result.data
                elif isinstance(data, list) and isinstance(result.data, list):
                    data = data + result.data
                else:
                    data = result.data

            if result.text is not None and str(result.text).strip():
                texts.append(str(result.text))
            screenshots.extend(s for s in result.screenshots if s)

        logger.info("workflow_completed", function=definition.name, context_id=scope.context_id)
        return RunResult(
            success=True,
            data=data if data is not None else {"text": texts, "screenshots": screenshots},
            context_id=scope.context_id,
        )

    async def _prepare_step(self, original, definition: FunctionDefinition, inputs, scope: StepScope):
        """Clone, substitute and apply navigation fallbacks."""
        raw = substitute(copy.deepcopy(step_to_dict(original)), inputs)

        if raw.get("type") == "navigate":
            url = raw.get("url")
            if not url and definition.start_url:
                raw["url"] = definition.start_url
            elif isinstance(url, str) and url.startswith("/"):
                origin = _pattern_origin(definition.url_patterns)
                if origin is None:
                    current = await self.driver.get_context(scope.context_id)
                    if current is not None and is_http_url(current.url):
                        origin = url_origin(current.url)
                if origin:
                    raw["url"] = origin + url

        return parse_step(raw)

    async def resolve_target(
        self,
        definition: FunctionDefinition,
        context_id: Optional[int] = None,
    ) -> ContextInfo:
        """
        Pick the context a run executes against.

        Raises:
            TargetResolutionError: a current-page workflow has no usable page
        """
        current_page = needs_current_page(definition)

        context = None
        if context_id is not None:
            context = await self.driver.get_context(context_id)
            if context is None and current_page:
                raise TargetResolutionError(
                    f"Target context {context_id} not found",
                    function_name=definition.name,
                )
        if context is None:
            context = await self.driver.active_context()

        if context is None:
            if current_page:
                raise TargetResolutionError(
                    "No active context for a current-page workflow",
                    function_name=definition.name,
                )
            return await self._create_context(definition)

        if not is_internal_url(context.url):
            return context

        if not current_page:
            return await self._create_context(definition)

        fallback = await self._find_fallback_context(definition, exclude=context.id)
        if fallback is None:
            raise TargetResolutionError(
                "Current-page workflow needs a regular web page, but the current context is internal",
                function_name=definition.name,
            )
        logger.debug("target_fallback_context", function=definition.name, context_id=fallback.id)
        return fallback

    async def _create_context(self, definition: FunctionDefinition) -> ContextInfo:
        url = bootstrap_url(definition, self.config.default_bootstrap_url)
        try:
            context = await self.driver.create_context(url)
        except AutopilotError:
            raise
        except Exception as e:
            raise TargetResolutionError(
                f"Unable to create execution context: {e}",
                function_name=definition.name,
            )
        logger.info("execution_context_created", function=definition.name, context_id=context.id, url=url)
        return context

    async def _find_fallback_context(self, definition: FunctionDefinition, exclude: int) -> Optional[ContextInfo]:
        candidates = [
            c for c in await self.driver.list_contexts()
            if c.id != exclude and not is_internal_url(c.url)
        ]
        if definition.url_patterns:
            matching = [c for c in candidates if matches_url_filter(definition.url_patterns, c.url)]
            if matching:
                return matching[0]
        active = [c for c in candidates if c.active]
        return (active or candidates or [None])[0]

    # ==================== Sub-workflows ====================

    async def resolve_function(self, name: str, current_url: Optional[str] = None) -> Optional[FunctionDefinition]:
        """Local library first, then the remote backend (saved locally on success)."""
        definition = self.store.get(name)
        if definition is not None:
            return definition
        if self.backend is None or not self.backend.enabled:
            return None

        definition = await self.backend.fetch_by_name(name, current_url)
        if definition is None:
            return None
        saved = await self.store.upsert(definition, unique=False)
        return self.store.get(saved["name"])

    async def run_sub_workflow(self, name: str, inputs: dict[str, Any], scope: StepScope) -> Any:
        """
        Run a nested workflow in the caller's context and return its data.

        Raises:
            AbortError: cancellation observed before or during the call
            StepExecutionError: unknown function, nesting too deep, or the run failed
        """
        scope.check_cancelled()

        depth = scope.depth + 1
        if depth > self.config.max_sub_workflow_depth:
            raise StepExecutionError(
                f'Sub-function "{name}" exceeds maximum nesting depth of {self.config.max_sub_workflow_depth}'
            )

        current = await self.driver.get_context(scope.context_id)
        definition = await self.resolve_function(name, current.url if current else None)
        if definition is None:
            raise StepExecutionError(f'Function "{name}" not found in library')

        logger.info("sub_workflow_started", function=name, parent=scope.function_name, depth=depth)
        result = await self.run(
            definition,
            inputs,
            context_id=scope.context_id,
            cancel_token=scope.cancel_token,
            depth=depth,
        )

        if result.aborted:
            raise AbortError(result.error or "Stopped by user")
        if not result.success:
            raise StepExecutionError(f'Sub-function "{name}" failed: {result.error}')
        return result.data
