"""Condition engine: a small boolean expression language over run context.

Expressions are plain dicts so they can live inside YAML/JSON definitions::

    {"type": "compare",
     "left": {"type": "context", "path": "payload.priority"},
     "operator": "eq",
     "right": "high"}

Operands are ValueRefs (``literal``, ``context``, ``env``, ``node``,
``secret``); anything that is not a ValueRef dict is taken as a literal.
Paths that do not resolve yield ``UNDEFINED``, and every comparison involving
``UNDEFINED`` is false. There is no implicit coercion: numbers compare with
numbers, strings with strings, and booleans are not numbers.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..errors import ConditionError, ConditionTimeoutError, ErrorCategory

logger = logging.getLogger(__name__)


class _Undefined:
    """Marker for a path that did not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()

COMPARE_OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte")
COMPOUND_TYPES = ("and", "or")
CONDITION_TYPES = ("and", "or", "not", "compare", "exists", "matches", "in", "custom")
VALUE_REF_TYPES = ("literal", "context", "env", "node", "secret")

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


class ConditionEvaluator(ABC):
    """Base class for custom (plugin-supplied) condition evaluators."""

    @abstractmethod
    def evaluate(self, params: Dict[str, Any], context: Dict[str, Any]) -> bool:
        """Evaluate whether the condition is met."""


class FunctionEvaluator(ConditionEvaluator):
    """Adapts a plain ``fn(params, context) -> bool`` to the evaluator interface."""

    def __init__(self, fn: Callable[[Dict[str, Any], Dict[str, Any]], bool]):
        self.fn = fn

    def evaluate(self, params, context) -> bool:
        return bool(self.fn(params, context))


def get_by_path(obj: Any, path: str) -> Any:
    """Resolve a dot path ("data.items.0.name"); UNDEFINED when any segment is missing."""
    if path == "":
        return obj
    current = obj
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return UNDEFINED
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            idx = int(part)
            if idx < -len(current) or idx >= len(current):
                return UNDEFINED
            current = current[idx]
        else:
            return UNDEFINED
    return current


def is_value_ref(value: Any) -> bool:
    return isinstance(value, Mapping) and value.get("type") in VALUE_REF_TYPES


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if value is None:
        return "null"
    return type(value).__name__


def _equal(left: Any, right: Any) -> bool:
    return _kind(left) == _kind(right) and left == right


def compare_values(left: Any, right: Any, operator: str) -> bool:
    """Strictly-typed comparison; anything involving UNDEFINED is false."""
    if left is UNDEFINED or right is UNDEFINED:
        return False
    if operator == "eq":
        return _equal(left, right)
    if operator == "neq":
        return not _equal(left, right)

    kind = _kind(left)
    if kind != _kind(right) or kind not in ("number", "string"):
        return False
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    if operator == "lte":
        return left <= right
    raise ConditionError(f"Unknown comparison operator '{operator}'")


@lru_cache(maxsize=256)
def _compile(pattern: str, flags: str) -> "re.Pattern[str]":
    value = 0
    for flag in flags:
        value |= _REGEX_FLAGS[flag]
    return re.compile(pattern, value)


class ConditionEngine:
    """Evaluates condition trees against a run context.

    Owns the custom evaluator registry; plugins add entries with
    :meth:`register`. Regex matching and custom evaluators run on a small
    thread pool so they can be bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        timeout: float = 1.0,
        env: Optional[Mapping[str, str]] = None,
        secrets: Optional[Mapping[str, str]] = None,
        max_workers: int = 4,
    ):
        self.timeout = timeout
        self._env = env if env is not None else os.environ
        self._secrets: Mapping[str, str] = secrets if secrets is not None else {}
        self._evaluators: Dict[str, ConditionEvaluator] = {}
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="condition")

    def register(self, name: str, evaluator: ConditionEvaluator) -> None:
        if not isinstance(evaluator, ConditionEvaluator):
            evaluator = FunctionEvaluator(evaluator)
        if name in self._evaluators:
            logger.warning(f"Replacing condition evaluator '{name}'")
        self._evaluators[name] = evaluator

    def unregister(self, name: str) -> None:
        self._evaluators.pop(name, None)

    def evaluator_names(self) -> List[str]:
        return sorted(self._evaluators)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def resolve_value(self, ref: Any, context: Dict[str, Any]) -> Any:
        """Resolve a ValueRef; non-ref values are literals."""
        if not is_value_ref(ref):
            return ref
        ref_type = ref["type"]
        if ref_type == "literal":
            return ref.get("value")
        if ref_type == "context":
            return get_by_path(context, str(ref.get("path", "")))
        if ref_type == "env":
            value = self._env.get(str(ref.get("name", "")))
            return UNDEFINED if value is None else value
        if ref_type == "secret":
            value = self._secrets.get(str(ref.get("name", "")))
            return UNDEFINED if value is None else value
        # node
        node_id = ref.get("node_id", ref.get("nodeId"))
        entry = context.get("nodes", {}).get(node_id)
        if not isinstance(entry, Mapping) or "output" not in entry:
            return UNDEFINED
        return get_by_path(entry["output"], str(ref.get("path", "")))

    def evaluate(self, expression: Any, context: Dict[str, Any]) -> bool:
        """Evaluate an expression tree.

        Raises:
            ConditionError: malformed tree or failing custom evaluator
            ConditionTimeoutError: regex or custom evaluator exceeded the timeout
        """
        if not isinstance(expression, Mapping):
            raise ConditionError(f"Condition must be an object, got {_kind(expression)}")
        cond_type = expression.get("type")

        if cond_type == "and":
            return all(self.evaluate(c, context) for c in expression.get("conditions", []))
        if cond_type == "or":
            return any(self.evaluate(c, context) for c in expression.get("conditions", []))
        if cond_type == "not":
            return not self.evaluate(expression.get("condition"), context)
        if cond_type == "compare":
            operator = expression.get("operator", expression.get("op"))
            if operator not in COMPARE_OPERATORS:
                raise ConditionError(f"Unknown comparison operator '{operator}'")
            left = self.resolve_value(expression.get("left"), context)
            right = self.resolve_value(expression.get("right"), context)
            return compare_values(left, right, operator)
        if cond_type == "exists":
            value = self.resolve_value(expression.get("value"), context)
            return value is not UNDEFINED and value is not None
        if cond_type == "in":
            return self._evaluate_in(expression, context)
        if cond_type == "matches":
            return self._evaluate_matches(expression, context)
        if cond_type == "custom":
            return self._evaluate_custom(expression, context)
        raise ConditionError(f"Unknown condition type '{cond_type}'")

    def _evaluate_in(self, expression: Mapping, context: Dict[str, Any]) -> bool:
        value = self.resolve_value(expression.get("value"), context)
        values = self.resolve_value(expression.get("values"), context)
        if value is UNDEFINED or values is UNDEFINED:
            return False
        if isinstance(values, str):
            return isinstance(value, str) and value in values
        if isinstance(values, Mapping):
            return isinstance(value, str) and value in values
        if isinstance(values, (list, tuple, set, frozenset)):
            return any(_equal(value, item) for item in values)
        return False

    def _evaluate_matches(self, expression: Mapping, context: Dict[str, Any]) -> bool:
        value = self.resolve_value(expression.get("value"), context)
        if not isinstance(value, str):
            return False
        try:
            regex = _compile(str(expression.get("pattern", "")), str(expression.get("flags", "")))
        except (re.error, KeyError) as e:
            raise ConditionError(f"Invalid regex: {e}") from e
        return self._run_bounded(lambda: regex.search(value) is not None, "regex match")

    def _evaluate_custom(self, expression: Mapping, context: Dict[str, Any]) -> bool:
        name = expression.get("evaluator")
        evaluator = self._evaluators.get(name)
        if evaluator is None:
            raise ConditionError(f"Unknown condition evaluator '{name}'")
        params = {
            key: self.resolve_value(value, context)
            for key, value in (expression.get("params") or {}).items()
        }
        return bool(self._run_bounded(lambda: evaluator.evaluate(params, context), f"evaluator '{name}'"))

    def _run_bounded(self, fn: Callable[[], bool], what: str) -> bool:
        future = self._pool.submit(fn)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as e:
            # Python threads can't be killed; the stuck call is abandoned
            future.cancel()
            raise ConditionTimeoutError(f"{what} exceeded {self.timeout:.2f}s") from e
        except ConditionError:
            raise
        except Exception as e:
            raise ConditionError(f"{what} failed: {e}", category=ErrorCategory.PLUGIN) from e


def validate_condition(expression: Any, known_evaluators: Optional[Iterable[str]] = None) -> List[str]:
    """Pure structural check of a condition tree. Returns a list of problems."""
    known = set(known_evaluators) if known_evaluators is not None else None
    errors: List[str] = []
    _validate(expression, "condition", known, errors)
    return errors


def _validate_value_ref(value: Any, where: str, errors: List[str]) -> None:
    if not isinstance(value, Mapping) or "type" not in value:
        return  # literal
    ref_type = value.get("type")
    if ref_type not in VALUE_REF_TYPES:
        errors.append(f"{where}: unknown value reference type '{ref_type}'")
    elif ref_type == "context" and not isinstance(value.get("path"), str):
        errors.append(f"{where}: context reference requires a 'path'")
    elif ref_type in ("env", "secret") and not value.get("name"):
        errors.append(f"{where}: {ref_type} reference requires a 'name'")
    elif ref_type == "node" and not (value.get("node_id") or value.get("nodeId")):
        errors.append(f"{where}: node reference requires a 'node_id'")


def _validate(expression: Any, where: str, known: Optional[set], errors: List[str]) -> None:
    if not isinstance(expression, Mapping):
        errors.append(f"{where}: must be an object")
        return
    cond_type = expression.get("type")
    if cond_type not in CONDITION_TYPES:
        errors.append(f"{where}: unknown condition type '{cond_type}'")
        return

    if cond_type in COMPOUND_TYPES:
        subs = expression.get("conditions")
        if not isinstance(subs, list) or not subs:
            errors.append(f"{where}: '{cond_type}' requires at least one sub-condition")
            return
        for i, sub in enumerate(subs):
            _validate(sub, f"{where}.{cond_type}[{i}]", known, errors)
    elif cond_type == "not":
        if "condition" not in expression:
            errors.append(f"{where}: 'not' requires a 'condition'")
        else:
            _validate(expression["condition"], f"{where}.not", known, errors)
    elif cond_type == "compare":
        operator = expression.get("operator", expression.get("op"))
        if operator not in COMPARE_OPERATORS:
            errors.append(f"{where}: unknown comparison operator '{operator}'")
        for side in ("left", "right"):
            if side not in expression:
                errors.append(f"{where}: compare requires '{side}'")
            else:
                _validate_value_ref(expression[side], f"{where}.{side}", errors)
    elif cond_type == "exists":
        if "value" not in expression:
            errors.append(f"{where}: exists requires 'value'")
        else:
            _validate_value_ref(expression["value"], f"{where}.value", errors)
    elif cond_type == "in":
        for key in ("value", "values"):
            if key not in expression:
                errors.append(f"{where}: in requires '{key}'")
            else:
                _validate_value_ref(expression[key], f"{where}.{key}", errors)
    elif cond_type == "matches":
        pattern = expression.get("pattern")
        flags = expression.get("flags", "")
        if "value" not in expression:
            errors.append(f"{where}: matches requires 'value'")
        else:
            _validate_value_ref(expression["value"], f"{where}.value", errors)
        if not isinstance(pattern, str):
            errors.append(f"{where}: matches requires a string 'pattern'")
        elif not isinstance(flags, str) or any(f not in _REGEX_FLAGS for f in flags):
            errors.append(f"{where}: unsupported regex flags '{flags}'")
        else:
            try:
                _compile(pattern, flags)
            except re.error as e:
                errors.append(f"{where}: invalid regex '{pattern}': {e}")
    elif cond_type == "custom":
        name = expression.get("evaluator")
        if not isinstance(name, str) or not name:
            errors.append(f"{where}: custom condition requires an 'evaluator'")
        elif known is not None and name not in known:
            errors.append(f"{where}: unknown condition evaluator '{name}'")
        params = expression.get("params")
        if params is not None and not isinstance(params, Mapping):
            errors.append(f"{where}: custom params must be an object")
