"""Data model: jobs, function definitions, typed steps and run results."""

from dataclasses import dataclass, field, asdict
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import ValidationError


ScheduleType = Literal["interval", "atTime", "keyword", "domChange"]
TargetKind = Literal["activeTab", "fixedTab"]
TriggerMode = Literal["oncePerUrl", "everyMatch"]

SCHEDULE_TYPE_ALIASES: dict[str, str] = {
    "interval": "interval",
    "every": "interval",
    "repeat": "interval",
    "at": "atTime",
    "attime": "atTime",
    "at-time": "atTime",
    "time": "atTime",
    "datetime": "atTime",
    "once": "atTime",
    "keyword": "keyword",
    "text": "keyword",
    "domchange": "domChange",
    "dom-change": "domChange",
    "contentchange": "domChange",
    "content-change": "domChange",
    "mutation": "domChange",
    "pagechange": "domChange",
    "page-change": "domChange",
}


class _CamelModel(BaseModel):
    """Accepts snake_case or camelCase keys, dumps camelCase by alias."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==================== Jobs ====================

class LastTrigger(_CamelModel):
    """What fired a job the last time it ran."""
    type: str
    reason: Optional[str] = None
    at: int
    context_id: Optional[int] = None


class Job(_CamelModel):
    """A persisted scheduling record binding a trigger to a workflow name."""
    id: str
    name: str
    function_name: str
    inputs: dict[str, Any] = Field(default_factory=dict)
    schedule_type: ScheduleType
    enabled: bool = True
    created_at: int

    target: TargetKind = "activeTab"
    tab_id: Optional[int] = None
    url_pattern: Optional[str] = None
    url_patterns: list[str] = Field(default_factory=list)
    cooldown_minutes: float = Field(default=0, ge=0)
    trigger_mode: TriggerMode = "oncePerUrl"

    last_run_at: Optional[int] = None
    last_status: Optional[Literal["success", "error"]] = None
    last_error: Optional[str] = None
    last_trigger: Optional[LastTrigger] = None
    last_keyword_url: Optional[str] = None
    last_dom_change_url: Optional[str] = None

    # interval
    interval_minutes: Optional[float] = None
    # atTime
    at_time_ms: Optional[int] = None
    at_time_iso: Optional[str] = Field(default=None, alias="atTimeISO")
    # keyword
    keyword: Optional[str] = None
    case_sensitive: bool = False
    match_whole_word: bool = False
    # domChange
    dom_selector: Optional[str] = None
    debounce_ms: Optional[int] = None
    min_added_nodes: Optional[int] = None
    run_on_page_load: Optional[bool] = None
    run_on_scroll: Optional[bool] = None

    def url_filters(self) -> list[str]:
        """All non-empty URL wildcard filters of this job."""
        patterns = []
        if self.url_pattern and self.url_pattern.strip():
            patterns.append(self.url_pattern.strip())
        for pattern in self.url_patterns:
            if isinstance(pattern, str) and pattern.strip():
                patterns.append(pattern.strip())
        return patterns

    def sanitized(self) -> dict[str, Any]:
        """Public view with only the fields relevant to this schedule type."""
        include = set(_COMMON_JOB_FIELDS) | _SCHEDULE_FIELDS[self.schedule_type]
        return self.model_dump(by_alias=True, include=include, exclude_none=True)


_COMMON_JOB_FIELDS = (
    "id", "name", "function_name", "schedule_type", "enabled", "created_at",
    "target", "tab_id", "url_pattern", "url_patterns", "cooldown_minutes",
    "trigger_mode", "last_run_at", "last_status", "last_error", "last_trigger",
    "last_keyword_url", "last_dom_change_url",
)

_SCHEDULE_FIELDS: dict[str, set[str]] = {
    "interval": {"interval_minutes"},
    "atTime": {"at_time_ms", "at_time_iso"},
    "keyword": {"keyword", "case_sensitive", "match_whole_word"},
    "domChange": {
        "dom_selector", "debounce_ms", "min_added_nodes",
        "run_on_page_load", "run_on_scroll",
    },
}


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


class JobSpec(BaseModel):
    """
    Job creation input.

    Accepts the loose key vocabulary used by callers (camelCase, snake_case
    and the historical aliases such as ``when``, ``everyMinutes`` or
    ``minAdded``) and folds it into one normalized shape. Schedule-specific
    rules are enforced by the scheduler when it builds the Job.
    """
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    job_name: Optional[str] = None
    function_name: str = ""
    inputs: dict[str, Any] = Field(default_factory=dict)
    schedule_type: ScheduleType = "interval"
    enabled: bool = True
    target: Optional[str] = None
    tab_id: Optional[int] = None
    url_pattern: Optional[str] = None
    url_patterns: Optional[list[str]] = None
    cooldown_minutes: Optional[float] = None
    trigger_mode: Optional[str] = None

    interval_minutes: Any = None
    at_time: Any = None
    keyword: Optional[str] = None
    case_sensitive: bool = False
    match_whole_word: bool = False
    dom_selector: Optional[str] = None
    debounce_ms: Any = None
    min_added_nodes: Any = None
    run_on_page_load: bool = True
    run_on_scroll: bool = False

    run_now: bool = False

    @model_validator(mode="before")
    @classmethod
    def _fold_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        raw_type = str(_first(data, "schedule_type", "scheduleType", "type") or "interval")
        schedule_type = SCHEDULE_TYPE_ALIASES.get(raw_type.strip().lower())
        if schedule_type is None:
            raise ValueError(f"Unsupported scheduleType: {raw_type}")

        inputs = _first(data, "inputs")
        return {
            "id": _first(data, "id"),
            "job_name": _first(data, "job_name", "jobName"),
            "function_name": str(_first(data, "function_name", "functionName", "name") or "").strip(),
            "inputs": inputs if isinstance(inputs, dict) else {},
            "schedule_type": schedule_type,
            "enabled": _first(data, "enabled") is not False,
            "target": _first(data, "target"),
            "tab_id": _first(data, "tab_id", "tabId"),
            "url_pattern": _first(data, "url_pattern", "urlPattern"),
            "url_patterns": _first(data, "url_patterns", "urlPatterns"),
            "cooldown_minutes": _first(data, "cooldown_minutes", "cooldownMinutes"),
            "trigger_mode": _first(data, "trigger_mode", "triggerMode"),
            "interval_minutes": _first(
                data, "interval_minutes", "intervalMinutes", "everyMinutes", "minutes"
            ),
            "at_time": _first(
                data, "at_time", "atTime", "at_time_epoch_ms", "atTimeEpochMs", "when", "time"
            ),
            "keyword": _first(data, "keyword"),
            "case_sensitive": bool(_first(data, "case_sensitive", "caseSensitive")),
            "match_whole_word": bool(_first(data, "match_whole_word", "matchWholeWord")),
            "dom_selector": _first(data, "dom_selector", "domSelector", "selector"),
            "debounce_ms": _first(data, "debounce_ms", "domDebounceMs", "debounceMs", "debounce"),
            "min_added_nodes": _first(data, "min_added_nodes", "minAddedNodes", "minAdded"),
            "run_on_page_load": _first(data, "run_on_page_load", "runOnPageLoad") is not False,
            "run_on_scroll": _first(data, "run_on_scroll", "runOnScroll") is True,
            "run_now": (
                _first(data, "run_now", "runNow") is True
                or _first(data, "run_on_create", "runOnCreate") is True
            ),
        }

    @classmethod
    def parse(cls, raw: dict[str, Any]) -> "JobSpec":
        """Validate raw input, raising the autopilot ValidationError."""
        try:
            return cls.model_validate(raw)
        except PydanticValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(part) for part in first.get("loc", ())) or None
            raise ValidationError(first.get("msg", str(e)), field=loc)


# ==================== Steps ====================

class StepBase(_CamelModel):
    """Fields shared by every step variant."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        coerce_numbers_to_str=True,
    )

    description: Optional[str] = None
    timeout: Optional[int] = None


class NavigateStep(StepBase):
    type: Literal["navigate"]
    url: Optional[str] = None


class ClickStep(StepBase):
    type: Literal["click"]
    selector: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None


class TypeStep(StepBase):
    type: Literal["type"]
    selector: Optional[str] = None
    value: str = ""


class PressKeyStep(StepBase):
    type: Literal["pressKey"]
    key: str = "Enter"
    selector: Optional[str] = None


class ScrollStep(StepBase):
    type: Literal["scroll"]
    selector: Optional[str] = None
    amount: int = 300
    direction: Literal["up", "down"] = "down"


class WaitStep(StepBase):
    type: Literal["wait"]
    condition: Optional[Literal["time", "selector", "text"]] = None
    value: Any = None
    selector: Optional[str] = None


class ExtractStep(StepBase):
    type: Literal["extract"]
    selector: Optional[str] = None
    pattern: Optional[str] = None


class ExtractAttributeStep(StepBase):
    type: Literal["extractAttribute"]
    selector: str
    attribute: str = "href"


class GetElementsStep(StepBase):
    type: Literal["getElements"]
    selector: str


class HoverStep(StepBase):
    type: Literal["hover"]
    selector: Optional[str] = None


class SwitchTabStep(StepBase):
    type: Literal["switchTab"]
    url: Optional[str] = None
    title: Optional[str] = None


class WaitForStableContentStep(StepBase):
    type: Literal["waitForStableContent"]
    stability_period: Optional[int] = None
    check_interval: Optional[int] = None


class ReturnValueStep(StepBase):
    type: Literal["returnValue"]
    selected_text: Optional[str] = None
    value: Any = None


class ScriptStep(StepBase):
    type: Literal["script"]
    code: str = ""


class ExecuteFunctionStep(StepBase):
    type: Literal["executeFunction"]
    function_name: str
    inputs: dict[str, Any] = Field(default_factory=dict)


class NoteStep(StepBase):
    type: Literal["note"]
    text: Optional[str] = None


class NotepadStep(StepBase):
    type: Literal["notepad"]
    action: Literal["set", "write", "get", "read", "getAll", "readAll", "append", "clear"]
    key: Optional[str] = None
    value: Any = None


class ScreenshotStep(StepBase):
    type: Literal["screenshot"]


class LiteralClickStep(StepBase):
    type: Literal["literalClick"]
    selector: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None


class LiteralTypeStep(StepBase):
    type: Literal["literalType"]
    selector: Optional[str] = None
    value: str = ""


class LiteralKeydownStep(StepBase):
    type: Literal["literalKeydown"]
    key: str = "Enter"
    code: Optional[str] = None
    selector: Optional[str] = None


TOOL_STEP_TYPES = (
    "generatePage", "downloadFile", "modifySite", "embedText",
    "askOllama", "useTool", "scheduler",
)


class ToolStep(StepBase):
    """Opaque capability call forwarded to the capability registry."""
    type: Literal[
        "generatePage", "downloadFile", "modifySite", "embedText",
        "askOllama", "useTool", "scheduler",
    ]
    tool_name: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)

    def capability_name(self) -> str:
        if self.type == "useTool":
            return self.tool_name or ""
        return self.type

    def capability_params(self) -> dict[str, Any]:
        merged = dict(self.model_extra or {})
        merged.update(self.params)
        return merged


Step = Annotated[
    Union[
        NavigateStep, ClickStep, TypeStep, PressKeyStep, ScrollStep, WaitStep,
        ExtractStep, ExtractAttributeStep, GetElementsStep, HoverStep,
        SwitchTabStep, WaitForStableContentStep, ReturnValueStep, ScriptStep,
        ExecuteFunctionStep, NoteStep, NotepadStep, ScreenshotStep,
        LiteralClickStep, LiteralTypeStep, LiteralKeydownStep, ToolStep,
    ],
    Field(discriminator="type"),
]

_STEP_ADAPTER: TypeAdapter = TypeAdapter(Step)

STEP_TYPES: frozenset[str] = frozenset({
    "navigate", "click", "type", "pressKey", "scroll", "wait", "extract",
    "extractAttribute", "getElements", "hover", "switchTab",
    "waitForStableContent", "returnValue", "script", "executeFunction",
    "note", "notepad", "screenshot", "literalClick", "literalType",
    "literalKeydown", *TOOL_STEP_TYPES,
})


def parse_step(raw: dict[str, Any]) -> Step:
    """Parse one raw step dict into its typed variant."""
    try:
        return _STEP_ADAPTER.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid step {raw.get('type', '?')!r}: {e.errors()[0].get('msg')}",
            field="type",
        )


def step_to_dict(step: Step) -> dict[str, Any]:
    """Raw camelCase form of a step, the inverse of parse_step."""
    return step.model_dump(by_alias=True, exclude_none=True)


# ==================== Function definitions ====================

class FunctionInput(_CamelModel):
    """Declared workflow input."""
    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    description: Optional[str] = None


class FunctionDefinition(_CamelModel):
    """A named, ordered list of steps plus applicability metadata."""
    name: str
    description: str = ""
    inputs: list[FunctionInput] = Field(default_factory=list)
    outputs: Any = None
    url_patterns: list[str] = Field(default_factory=list)
    start_url: Optional[str] = None
    steps: list[Step] = Field(default_factory=list)
    requires_current_tab: bool = False
    navigation_strategy: Optional[str] = None
    model_preferences: dict[str, Any] = Field(default_factory=dict)

    def resolve_inputs(self, inputs: Optional[dict[str, Any]]) -> dict[str, Any]:
        """Apply declared defaults; reject missing required inputs."""
        resolved = dict(inputs or {})
        for declared in self.inputs:
            if resolved.get(declared.name) is not None:
                continue
            if declared.default is not None:
                resolved[declared.name] = declared.default
            elif declared.required:
                raise ValidationError(
                    f"Missing required input '{declared.name}' for {self.name}",
                    field=declared.name,
                )
        return resolved

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    @classmethod
    def parse(cls, raw: dict[str, Any]) -> "FunctionDefinition":
        """Validate raw input, raising the autopilot ValidationError."""
        try:
            return cls.model_validate(raw)
        except PydanticValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(part) for part in first.get("loc", ())) or None
            raise ValidationError(
                f"Invalid function definition {raw.get('name', '?')!r}: {first.get('msg')}",
                field=loc,
            )


# ==================== Results ====================

@dataclass
class ExecutionResult:
    """Normalized outcome of one step."""
    success: bool
    data: Any = None
    extracted: Any = None
    text: Optional[str] = None
    screenshots: list[str] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None
    next_context_id: Optional[int] = None
    step: Optional[int] = None
    skipped: bool = False

    @classmethod
    def fail(cls, error: str, error_type: str = "StepExecutionError") -> "ExecutionResult":
        return cls(success=False, error=error, error_type=error_type)


@dataclass
class RunResult:
    """Outcome of a whole workflow run."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    step: Optional[int] = None
    aborted: bool = False
    context_id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}
