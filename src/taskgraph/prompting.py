"""
Prompt Construction

Merge policy for a node's effective input and rendering of its prompt
template. Deterministic for a given node and set of dependency results.
"""

import copy
import json
from typing import Any, Dict, Mapping

from .node import UPSTREAM_KEY, Node
from .types import PromptRenderError

SCHEMA_INSTRUCTION = (
    "\n\nRespond with ONLY a JSON value matching this JSON Schema "
    "(no markdown, no explanation):\n{schema}"
)


def build_effective_input(node: Node, upstream_results: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Static input plus dependency results.

    The node's own `input` keys are copied first; dependency results are
    added under the reserved `upstream` key, keyed by dependency id in
    sorted order. Everything is deep-copied: a client that mutates its
    input cannot reach a dependency's stored result or the node itself.
    """
    effective = copy.deepcopy(dict(node.input))
    effective[UPSTREAM_KEY] = {
        dep_id: copy.deepcopy(upstream_results[dep_id]) for dep_id in sorted(upstream_results)
    }
    return effective


def render_prompt(
    node: Node,
    effective_input: Mapping[str, Any],
    include_schema: bool = True,
) -> str:
    """
    Fill the node's template with `str.format_map`.

    `{topic}` reads a static input key; `{upstream[outline][title]}` reads
    a field of a dependency's result.

    Raises:
        PromptRenderError: If the template references a missing key or is
            malformed. Not retryable.
    """
    try:
        prompt = node.prompt_template.format_map(effective_input)
    except (KeyError, IndexError) as e:
        raise PromptRenderError(f"[{node.id}] Prompt references missing value: {e}", cause=e)
    except (ValueError, AttributeError, TypeError) as e:
        raise PromptRenderError(f"[{node.id}] Malformed prompt template: {e}", cause=e)

    if include_schema:
        schema_json = json.dumps(node.output_schema, indent=2, sort_keys=True)
        prompt += SCHEMA_INSTRUCTION.format(schema=schema_json)
    return prompt
