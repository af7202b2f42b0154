"""
Output Validation

Checks raw model output against a node's JSON Schema descriptor.
Validation failure is a normal outcome: it is returned, never raised,
so the executor can record it against the node and move on.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from referencing import Registry
from referencing.exceptions import Unresolvable
from referencing.jsonschema import DRAFT202012

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchemaViolation:
    """One failed expectation, located by a JSON path into the output."""

    path: str
    message: str
    keyword: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "message": self.message, "keyword": self.keyword}


@dataclass(frozen=True)
class ValidatedResult:
    """Outcome of validating one output. `output` is passed through unchanged."""

    valid: bool
    output: Any
    violations: List[SchemaViolation] = field(default_factory=list)

    def describe(self) -> str:
        if self.valid:
            return "valid"
        return "; ".join(f"{v.path}: {v.message}" for v in self.violations)


def format_path(parts: Iterable[Any]) -> str:
    """Render a jsonschema error path as `$.items[0].name`."""
    path = "$"
    for part in parts:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}"
    return path


def check_schema(schema: Any) -> Optional[str]:
    """
    Check that a schema descriptor is itself usable.

    Returns:
        None if the schema is a valid JSON Schema object, otherwise a
        description of the problem
    """
    if not isinstance(schema, dict):
        return f"schema must be an object, got {type(schema).__name__}"
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as e:
        return e.message

    resolver = Registry().resolver_with_root(DRAFT202012.create_resource(schema))
    for ref in _refs(schema):
        try:
            resolver.lookup(ref)
        except Unresolvable as e:
            return f"unresolvable $ref {ref!r}: {e!r}"
    return None


def _refs(schema: Any) -> Iterator[str]:
    # Subschemas with their own $id resolve against a different base; skip them
    stack = [schema]
    while stack:
        current = stack.pop()
        if isinstance(current, list):
            stack.extend(current)
        elif isinstance(current, dict):
            ref = current.get("$ref")
            if isinstance(ref, str):
                yield ref
            for key, value in current.items():
                if key in ("const", "enum", "default", "examples"):
                    continue
                if isinstance(value, dict) and "$id" in value:
                    continue
                stack.append(value)


class Validator:
    """
    JSON Schema validator with a per-schema compile cache.

    Stateless from the caller's point of view: the cache only memoizes
    compiled validators, so `validate` is a pure function of its inputs.
    """

    def __init__(self) -> None:
        self._compiled: Dict[str, Draft202012Validator] = {}

    def _compile(self, schema: Dict[str, Any]) -> Draft202012Validator:
        key = json.dumps(schema, sort_keys=True, default=str)
        compiled = self._compiled.get(key)
        if compiled is None:
            compiled = Draft202012Validator(
                schema, format_checker=Draft202012Validator.FORMAT_CHECKER
            )
            self._compiled[key] = compiled
        return compiled

    def validate(self, output: Any, schema: Dict[str, Any]) -> ValidatedResult:
        """
        Structurally check `output` against `schema`.

        Args:
            output: Raw structured output from the model
            schema: JSON Schema descriptor

        Returns:
            ValidatedResult; on failure `violations` lists every field path
            and the expectation it violated, sorted by path
        """
        problem = check_schema(schema)
        if problem:
            logger.warning(f"[validator] Unusable schema: {problem}")
            return ValidatedResult(
                valid=False,
                output=output,
                violations=[SchemaViolation("$", f"invalid schema: {problem}", "schema")],
            )

        try:
            errors = sorted(
                self._compile(schema).iter_errors(output),
                key=lambda e: (format_path(e.absolute_path), e.validator),
            )
        except Unresolvable as e:
            logger.warning(f"[validator] Unresolvable reference in schema: {e!r}")
            return ValidatedResult(
                valid=False,
                output=output,
                violations=[SchemaViolation("$", f"unresolvable reference: {e!r}", "schema")],
            )
        if not errors:
            return ValidatedResult(valid=True, output=output)

        violations = [
            SchemaViolation(
                path=format_path(e.absolute_path),
                message=e.message,
                keyword=str(e.validator),
            )
            for e in errors
        ]
        return ValidatedResult(valid=False, output=output, violations=violations)


_default_validator = Validator()


def validate(output: Any, schema: Dict[str, Any]) -> ValidatedResult:
    """Module-level shortcut using a shared Validator."""
    return _default_validator.validate(output, schema)
