"""Configuration loading and validation."""

import json
import hashlib
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigError
from .models import FunctionDefinition


class SchedulerConfig(BaseModel):
    """Trigger scheduler configuration."""
    default_interval_minutes: float = Field(default=5, ge=1)
    default_debounce_ms: int = Field(default=1200, ge=200, le=60000)
    min_debounce_ms: int = Field(default=200, ge=0)
    max_debounce_ms: int = Field(default=60000, ge=200)
    min_suppression_ms: int = Field(default=1000, ge=0)
    max_suppression_ms: int = Field(default=30000, ge=1000)
    keyword_snapshot_chars: int = Field(default=250000, ge=1000)
    run_history_hours: int = Field(default=24 * 7, ge=1)


class RunnerConfig(BaseModel):
    """Workflow runner and step interpreter configuration."""
    default_step_timeout_ms: int = Field(default=10000, ge=100)
    navigation_timeout_ms: int = Field(default=30000, ge=1000)
    wait_poll_interval_ms: int = Field(default=200, ge=10)
    default_wait_ms: int = Field(default=1000, ge=0)
    stable_content_timeout_ms: int = Field(default=300000, ge=1000)
    stable_content_period_ms: int = Field(default=2500, ge=100)
    stable_content_check_ms: int = Field(default=500, ge=50)
    max_sub_workflow_depth: int = Field(default=8, ge=1, le=64)
    default_bootstrap_url: str = Field(default="about:blank")


class SandboxConfig(BaseModel):
    """Sandboxed script execution configuration."""
    timeout_seconds: float = Field(default=300.0, gt=0)
    extra_blocked_patterns: dict[str, str] = Field(default_factory=dict)


class BrowserConfig(BaseModel):
    """Playwright browser configuration."""
    headless: bool = Field(default=True)
    user_data_dir: str = Field(default="./data/browser")
    viewport_width: int = Field(default=1280, ge=320)
    viewport_height: int = Field(default=720, ge=240)


class BackendConfig(BaseModel):
    """Remote function library backend."""
    base_url: Optional[str] = Field(default=None)
    timeout_seconds: float = Field(default=15.0, gt=0)


class ServerConfig(BaseModel):
    """HTTP command surface."""
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)


class AutopilotConfig(BaseModel):
    """Main autopilot configuration."""
    name: str = Field(default="workflow-autopilot")
    version: str = Field(default="0.1.0")

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # Paths
    workflows_directory: str = Field(default="./config/workflows")
    data_directory: str = Field(default="./data")

    def config_hash(self) -> str:
        """Generate hash of config for change detection."""
        return hashlib.sha256(
            self.model_dump_json().encode()
        ).hexdigest()[:16]


class ConfigLoader:
    """Loads and validates YAML/JSON configurations."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)

    def load_autopilot_config(self, path: Optional[str] = None) -> AutopilotConfig:
        """Load main configuration."""
        if path is None:
            path = self.config_dir / "autopilot.yaml"
        else:
            path = Path(path)

        data = self._load_file(path)
        try:
            return AutopilotConfig(**data)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid autopilot config: {e}", config_path=str(path))

    def load_functions(self, directory: Optional[str] = None) -> list[FunctionDefinition]:
        """Load all function definitions from directory."""
        if directory is None:
            directory = self.config_dir / "workflows"
        else:
            directory = Path(directory)

        functions: list[FunctionDefinition] = []
        if not directory.exists():
            return functions

        for pattern in ("**/*.yaml", "**/*.yml", "**/*.json"):
            for file_path in sorted(directory.glob(pattern)):
                functions.extend(self._load_functions_file(file_path))

        return functions

    def _load_file(self, path: Path) -> dict[str, Any]:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", config_path=str(path))

        try:
            content = path.read_text()

            if path.suffix in (".yaml", ".yml"):
                return yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                return json.loads(content)
            else:
                raise ConfigError(
                    f"Unsupported config format: {path.suffix}",
                    config_path=str(path)
                )
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", config_path=str(path))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}", config_path=str(path))

    def _load_functions_file(self, path: Path) -> list[FunctionDefinition]:
        """Load function definitions from a single file."""
        data = self._load_file(path)

        # Support both a single definition and a list of definitions
        raw_list = data.get("functions", [data] if "name" in data else [])

        functions = []
        for raw in raw_list:
            try:
                functions.append(FunctionDefinition.model_validate(raw))
            except PydanticValidationError as e:
                raise ConfigError(
                    f"Invalid function definition {raw.get('name', '?')!r}: {e}",
                    config_path=str(path),
                )
        return functions
