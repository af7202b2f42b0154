"""
Executor Configuration

Validated settings for a run. Defaults suit interactive use; every field
can be overridden from the environment (or a .env file) with the
TASKGRAPH_ prefix, e.g. TASKGRAPH_MAX_RETRIES=4.
"""

import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from .retry import BackoffStrategy, RetryPolicy

ENV_PREFIX = "TASKGRAPH_"


class ExecutorConfig(BaseModel):
    """
    Settings for Executor.

    Attributes:
        max_retries: Retry budget per node for transient failures
        backoff: Delay growth between retries (fixed or exponential)
        base_delay: First backoff delay in seconds
        max_delay: Upper bound for any backoff delay
        multiplier: Growth factor for exponential backoff
        abort_on_failure: Cancel all outstanding work on the first Failed node
        max_concurrency: Cap on simultaneously Running nodes (None = unbounded)
        call_timeout: Per model call timeout in seconds, treated as transient
        run_timeout: Whole-run timeout in seconds; expiry aborts the run
        include_schema_in_prompt: Append the output schema to each prompt
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: int = Field(default=2, ge=0)
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    abort_on_failure: bool = False
    max_concurrency: Optional[int] = Field(default=None, ge=1)
    call_timeout: Optional[float] = Field(default=None, gt=0)
    run_timeout: Optional[float] = Field(default=None, gt=0)
    include_schema_in_prompt: bool = True

    @classmethod
    def from_env(
        cls,
        prefix: str = ENV_PREFIX,
        dotenv_path: Optional[str] = None,
        **overrides: Any,
    ) -> "ExecutorConfig":
        """
        Build config from environment variables (after loading .env).

        Unset or blank variables keep their defaults; explicit keyword
        overrides win over the environment. Variables already set in the
        process environment are not replaced by the .env file.

        Args:
            prefix: Environment variable prefix
            dotenv_path: Explicit .env file (default: searched for by python-dotenv)
            overrides: Field values that take precedence over the environment

        Raises:
            pydantic.ValidationError: If a variable holds an invalid value
        """
        load_dotenv(dotenv_path)
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is None or not raw.strip():
                continue
            if raw.strip().lower() == "none":
                values[name] = None
            else:
                values[name] = raw.strip()
        values.update(overrides)
        return cls.model_validate(values)

    def retry_policy(self) -> RetryPolicy:
        """RetryPolicy described by this config."""
        return RetryPolicy(
            max_retries=self.max_retries,
            backoff=self.backoff,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
        )
