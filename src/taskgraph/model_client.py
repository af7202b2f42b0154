"""
Model Client Boundary

The executor depends only on `ModelClient.call(prompt, input)` and on the
TransientError / FatalError distinction; it never names a provider.

  - ModelClient: the interface (Dependency Inversion)
  - LangChainModelClient: adapter for any LangChain chat model
  - classify_exception: maps provider exceptions onto the two failure kinds
  - create_model_client: factory for a local Ollama-backed client
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from langchain_core.messages import HumanMessage, SystemMessage

from .parsing import parse_model_output
from .types import FatalError, ModelCallError, TransientError

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a precise assistant inside an automated pipeline. "
    "Answer with valid JSON only."
)

TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})

# Matched against exception class names anywhere in the MRO, lowercased
TRANSIENT_NAME_MARKERS = (
    "ratelimit",
    "timeout",
    "connect",
    "unavailable",
    "overloaded",
    "internalserver",
)


class ModelClient(ABC):
    """
    Abstract interface for the generative-model call a node makes.

    Implementations must raise TransientError for retryable conditions
    and FatalError for everything that must not be retried.
    """

    @abstractmethod
    async def call(self, prompt: str, input: Mapping[str, Any]) -> Any:
        """
        Perform one model call.

        Args:
            prompt: Fully rendered prompt
            input: The node's effective input (static input + upstream results)

        Returns:
            Structured output (dict, list, scalar) or raw text
        """
        pass


def _status_code(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    return status if isinstance(status, int) else None


def classify_exception(exc: BaseException) -> ModelCallError:
    """
    Map an arbitrary provider exception onto TransientError or FatalError.

    Transient: timeouts, connection errors, HTTP 408/409/425/429/5xx,
    and exception classes named like rate-limit / timeout / connect(ion) /
    unavailable / overloaded errors. Everything else is fatal.
    """
    if isinstance(exc, ModelCallError):
        return exc

    message = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return TransientError(message, cause=exc)

    status = _status_code(exc)
    if status is not None:
        if status in TRANSIENT_STATUS_CODES or status >= 500:
            return TransientError(message, cause=exc)
        return FatalError(message, cause=exc)

    names = [cls.__name__.lower() for cls in type(exc).__mro__]
    if any(marker in name for name in names for marker in TRANSIENT_NAME_MARKERS):
        return TransientError(message, cause=exc)
    return FatalError(message, cause=exc)


class LangChainModelClient(ModelClient):
    """
    Adapter for LangChain ChatModel implementations.

    Sends a system message plus the rendered prompt, then parses the
    text reply into JSON. Unparseable text is returned unchanged so the
    Validator reports it as a content failure rather than an infra one.
    """

    def __init__(
        self,
        llm: Any,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        parse_json: bool = True,
    ):
        """
        Args:
            llm: LangChain ChatModel instance (anything with `ainvoke`)
            system_prompt: System message sent with every call
            parse_json: Parse text replies into JSON values
        """
        self.llm = llm
        self.system_prompt = system_prompt
        self.parse_json = parse_json

    async def call(self, prompt: str, input: Mapping[str, Any]) -> Any:
        messages = [SystemMessage(content=self.system_prompt), HumanMessage(content=prompt)]
        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            raise classify_exception(e) from e

        content = response.content if hasattr(response, "content") else str(response)
        if not self.parse_json or not isinstance(content, str):
            return content
        try:
            return parse_model_output(content)
        except ValueError:
            logger.debug(f"[model_client] Reply is not JSON, passing text through: {content[:80]!r}")
            return content


def create_model_client(
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    temperature: float = 0.0,
    num_predict: int = 2048,
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> LangChainModelClient:
    """
    Build a ModelClient backed by a local Ollama model.

    Args:
        model: Model name (defaults to TASKGRAPH_MODEL env var or "qwen2.5:7b")
        base_url: Ollama base URL (defaults to OLLAMA_BASE_URL env var)
        temperature: Sampling temperature (0.0 for deterministic JSON)
        num_predict: Max tokens to generate
        system_prompt: System message for every call

    Returns:
        LangChainModelClient wrapping ChatOllama
    """
    try:
        from langchain_ollama import ChatOllama
    except ImportError:
        raise ImportError("Install with: pip install 'llm-taskgraph[ollama]'")

    llm = ChatOllama(
        model=model or os.getenv("TASKGRAPH_MODEL", "qwen2.5:7b"),
        base_url=base_url or os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
        temperature=temperature,
        num_predict=num_predict,
    )
    return LangChainModelClient(llm, system_prompt=system_prompt)
