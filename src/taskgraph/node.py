"""
Node Descriptor

Immutable description of one workflow step. Runtime state (lifecycle,
result, attempts) is not stored here; it lives in the executor's
StateTable so the same Node can take part in many runs.
"""

from typing import Any, Dict, FrozenSet, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .types import MalformedNodeError
from .validator import check_schema

# Key under which dependency results are merged into a node's effective input
UPSTREAM_KEY = "upstream"


def format_validation_errors(error: PydanticValidationError) -> str:
    """
    Format pydantic validation errors for a human-readable load error.

    Args:
        error: pydantic ValidationError

    Returns:
        Formatted error string
    """
    errors = []
    for err in error.errors():
        field = ".".join(str(loc) for loc in err.get("loc", ["unknown"]))
        errors.append(f"{field}: {err.get('msg', '')}")
    return "; ".join(errors)


class Node(BaseModel):
    """
    One unit of work: a single model call whose output must satisfy
    `output_schema` before dependents may run.

    Accepts both camelCase (definition format) and snake_case field names.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    id: str = Field(min_length=1)
    input: Dict[str, Any] = Field(default_factory=dict)
    prompt_template: str = Field(alias="promptTemplate")
    output_schema: Dict[str, Any] = Field(alias="outputSchema")
    dependencies: FrozenSet[str] = Field(default_factory=frozenset)
    next_nodes: FrozenSet[str] = Field(default_factory=frozenset, alias="nextNodes")
    max_retries: Optional[int] = Field(default=None, ge=0, alias="maxRetries")

    @field_validator("output_schema")
    @classmethod
    def _schema_is_valid(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        problem = check_schema(value)
        if problem:
            raise ValueError(f"invalid JSON Schema: {problem}")
        return value

    @field_validator("input")
    @classmethod
    def _input_has_no_reserved_key(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if UPSTREAM_KEY in value:
            raise ValueError(f"'{UPSTREAM_KEY}' is reserved for dependency results")
        return value

    @classmethod
    def from_descriptor(cls, node_id: str, descriptor: Any) -> "Node":
        """
        Build a Node from one entry of a graph definition mapping.

        Args:
            node_id: Key of the entry in the definition mapping
            descriptor: Mapping of node fields

        Returns:
            Validated Node

        Raises:
            MalformedNodeError: If the descriptor is not a mapping, its id
                disagrees with the key, or any field is missing/invalid
        """
        if not isinstance(node_id, str) or not node_id:
            raise MalformedNodeError(None, f"Node id must be a non-empty string, got {node_id!r}")
        if not isinstance(descriptor, Mapping):
            raise MalformedNodeError(
                node_id, f"Descriptor must be an object, got {type(descriptor).__name__}"
            )

        data = dict(descriptor)
        declared = data.setdefault("id", node_id)
        if declared != node_id:
            raise MalformedNodeError(
                node_id, f"Descriptor id {declared!r} does not match key {node_id!r}"
            )

        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise MalformedNodeError(node_id, format_validation_errors(e)) from e

    def to_descriptor(self) -> Dict[str, Any]:
        """Serialize back to the camelCase definition format."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        data["dependencies"] = sorted(self.dependencies)
        data["nextNodes"] = sorted(self.next_nodes)
        return data
