"""Template resolution for node configuration.

String values in a node's ``config`` are Jinja2 templates rendered against
the run context (``trigger``, ``payload``, ``nodes``). A string that is a
single ``{{ expression }}`` yields the expression's native value instead of
its string form, so ``"{{ nodes.fetch.output.items }}"`` stays a list.
Values of the form ``{"$ref": <ValueRef>}`` are resolved through the
condition engine. Templates are compiled once and rendered many times.
"""

import logging
import re
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional

from jinja2 import ChainableUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from ..errors import ActionInputError

logger = logging.getLogger(__name__)

REF_KEY = "$ref"

_EXPRESSION_ONLY = re.compile(r"^\s*\{\{(?P<expr>(?:(?!\{\{|\}\}).)*)\}\}\s*$", re.DOTALL)

RefResolver = Callable[[Any, Dict[str, Any]], Any]


def _has_template_syntax(value: str) -> bool:
    return "{{" in value or "{%" in value


class CompiledConfig:
    """A node config with every template pre-compiled."""

    def __init__(self, render: Callable[[Dict[str, Any], Optional[RefResolver]], Any]):
        self._render = render

    def render(self, context: Dict[str, Any], resolve_ref: Optional[RefResolver] = None) -> Any:
        """Resolve against ``context``.

        Raises:
            ActionInputError: template failed at render time (sandbox violation, bad filter, ...)
        """
        try:
            return self._render(context, resolve_ref)
        except TemplateError as e:
            raise ActionInputError(f"Template rendering failed: {e}") from e


class DataSandbox(SandboxedEnvironment):
    """Sandbox where dotted access prefers mapping keys over attributes.

    Payloads routinely carry keys like ``items`` or ``keys``; ``payload.items``
    must be the data, not the bound ``dict.items`` method.
    """

    def getattr(self, obj: Any, attribute: str) -> Any:
        if isinstance(obj, Mapping) and attribute in obj:
            return obj[attribute]
        return super().getattr(obj, attribute)


class TemplateCompiler:
    """Compiles configs with a locked-down Jinja sandbox."""

    def __init__(self):
        self.env = DataSandbox(
            autoescape=False,
            undefined=ChainableUndefined,
            enable_async=False,
        )

    def compile(self, config: Any) -> CompiledConfig:
        """
        Compile every template in ``config``.

        Raises:
            ActionInputError: a template has a syntax error
        """
        try:
            return CompiledConfig(self._compile(config))
        except TemplateError as e:
            raise ActionInputError(f"Invalid template: {e}") from e

    def check(self, config: Any) -> List[str]:
        """Return syntax errors for every template in ``config``."""
        errors: List[str] = []
        self._check(config, "config", errors)
        return errors

    def _check(self, value: Any, where: str, errors: List[str]) -> None:
        if isinstance(value, dict):
            for key, item in value.items():
                self._check(item, f"{where}.{key}", errors)
        elif isinstance(value, list):
            for i, item in enumerate(value):
                self._check(item, f"{where}[{i}]", errors)
        elif isinstance(value, str) and _has_template_syntax(value):
            try:
                self._compile_string(value)
            except TemplateError as e:
                errors.append(f"{where}: invalid template: {e}")

    def _compile(self, value: Any):
        if isinstance(value, dict):
            if set(value) == {REF_KEY}:
                ref = value[REF_KEY]
                return lambda ctx, resolve: resolve(ref, ctx) if resolve is not None else ref
            compiled = {key: self._compile(item) for key, item in value.items()}
            return lambda ctx, resolve: {key: fn(ctx, resolve) for key, fn in compiled.items()}
        if isinstance(value, list):
            items = [self._compile(item) for item in value]
            return lambda ctx, resolve: [fn(ctx, resolve) for fn in items]
        if isinstance(value, str) and _has_template_syntax(value):
            return self._compile_string(value)
        return lambda ctx, resolve: value

    def _compile_string(self, value: str):
        match = _EXPRESSION_ONLY.match(value)
        if match:
            expression = self.env.compile_expression(match.group("expr").strip(), undefined_to_none=True)
            return lambda ctx, resolve: expression(**ctx)
        template = self.env.from_string(value)
        return lambda ctx, resolve: template.render(**ctx)


class TemplateCache:
    """Compiled configs keyed by (workflow_id, version, node_id)."""

    def __init__(self, compiler: Optional[TemplateCompiler] = None):
        self.compiler = compiler or TemplateCompiler()
        self._cache: Dict[tuple, CompiledConfig] = {}

    def get(self, workflow_id: str, version: int, node_id: str, config: Any) -> CompiledConfig:
        key = (workflow_id, version, node_id)
        compiled = self._cache.get(key)
        if compiled is None:
            compiled = self.compiler.compile(config)
            self._cache[key] = compiled
        return compiled

    def evict(self, workflow_id: str) -> None:
        for key in [k for k in self._cache if k[0] == workflow_id]:
            del self._cache[key]

    def __len__(self) -> int:
        return len(self._cache)
