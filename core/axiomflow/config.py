"""Engine configuration.

Everything the interpreter would otherwise pull from process-wide defaults
lives on one ``EngineConfig`` object passed in at construction: the logical
model registry, step/delegation/loop guards, retry backoff and the parallel
branch failure policy.

``load_engine_config()`` reads ``~/.axiomflow/configuration.json`` and applies
``AXIOMFLOW_*`` environment overrides on top.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

AXIOMFLOW_CONFIG_FILE = Path.home() / ".axiomflow" / "configuration.json"

DEFAULT_MODEL = "anthropic/claude-sonnet-4-20250514"


def get_axiomflow_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from ~/.axiomflow/configuration.json (or ``path``)."""
    config_file = path or AXIOMFLOW_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        logger.warning("Ignoring unreadable configuration file %s", config_file)
        return {}


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class ModelEndpoint:
    """Concrete invocation target for a logical model id."""

    model: str
    api_base: str | None = None
    api_key_env: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None

    @property
    def api_key(self) -> str | None:
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None


@dataclass
class EngineConfig:
    """Interpreter settings passed to ``WorkflowExecutor``."""

    models: dict[str, ModelEndpoint] = field(default_factory=dict)
    default_model: str = DEFAULT_MODEL

    max_steps: int = 500
    max_delegations: int = 10
    default_max_retries: int = 2
    tool_max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    max_loop_iterations: int = 100
    on_branch_failure: Literal["wait_all", "fail_all"] = "wait_all"

    def endpoint_for(self, model_id: str | None) -> ModelEndpoint:
        """Map a logical model id to its endpoint; unknown ids pass through as litellm strings."""
        key = model_id or self.default_model
        if key in self.models:
            return self.models[key]
        return ModelEndpoint(model=key)

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.retry_base_delay * (2 ** (attempt - 1))
        return min(delay, self.retry_max_delay)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineConfig":
        data = dict(data)
        models = {
            name: ModelEndpoint(**spec) if isinstance(spec, dict) else ModelEndpoint(model=spec)
            for name, spec in data.pop("models", {}).items()
        }
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown engine settings: %s", sorted(unknown))
        return cls(models=models, **{k: v for k, v in data.items() if k in known})


_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "AXIOMFLOW_DEFAULT_MODEL": ("default_model", str),
    "AXIOMFLOW_MAX_STEPS": ("max_steps", int),
    "AXIOMFLOW_MAX_DELEGATIONS": ("max_delegations", int),
    "AXIOMFLOW_MAX_RETRIES": ("default_max_retries", int),
    "AXIOMFLOW_TOOL_MAX_RETRIES": ("tool_max_retries", int),
    "AXIOMFLOW_MAX_LOOP_ITERATIONS": ("max_loop_iterations", int),
    "AXIOMFLOW_ON_BRANCH_FAILURE": ("on_branch_failure", str),
}


def load_engine_config(path: Path | None = None) -> EngineConfig:
    """Build an ``EngineConfig`` from the config file's ``engine`` section plus env overrides."""
    raw = get_axiomflow_config(path)
    data = dict(raw.get("engine", {}))

    # Same shape as the ``llm`` block used by the model adapter
    llm = raw.get("llm", {})
    if "default_model" not in data and llm.get("provider") and llm.get("model"):
        data["default_model"] = f"{llm['provider']}/{llm['model']}"

    for env_var, (name, cast) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value is not None:
            data[name] = cast(value)

    return EngineConfig.from_dict(data)
