"""Method registry built on Pydantic v2 models."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from time import perf_counter
from typing import Any

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from context_cache.errors import ContextCacheError, ValidationError


@dataclass(slots=True)
class MethodTrace:
    """Trace record for an executed protocol method."""

    name: str
    input_payload: dict[str, Any]
    ok: bool
    latency_ms: float
    error_code: str | None = None


class MethodSpec(BaseModel):
    """Declarative method specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: Callable[[BaseModel], dict[str, Any]]
    read_only: bool = False
    tags: list[str] = Field(default_factory=list)

    def invoke(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            data = self.args_schema.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(_describe(exc)) from exc
        return self.handler(data)


class MethodRegistry:
    """Dispatches request payloads to handlers and exports LangChain tools.

    Payloads are validated against each method's schema before the handler
    runs, so malformed input never reaches the store.
    """

    def __init__(self) -> None:
        self._methods: dict[str, MethodSpec] = {}
        self._observer: Callable[[MethodTrace], None] | None = None

    def register(self, spec: MethodSpec) -> None:
        if spec.name in self._methods:
            raise ValueError(f"Method already registered: {spec.name}")
        self._methods[spec.name] = spec

    def set_observer(self, observer: Callable[[MethodTrace], None] | None) -> None:
        """Set an optional callback invoked after each method execution."""
        self._observer = observer

    def execute(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        spec = self._methods.get(name)
        if spec is None:
            raise KeyError(f"Unknown method: {name}")
        return self._execute_spec(spec, payload)

    def execute_safe(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Like `execute`, but returns structured errors instead of raising."""
        if name not in self._methods:
            return {"error": {"code": "unknown_method", "message": f"Unknown method: {name}"}}
        try:
            return self.execute(name, payload)
        except ContextCacheError as exc:
            return exc.to_dict()

    def specs(self) -> list[MethodSpec]:
        return list(self._methods.values())

    def as_langchain_tools(self, *, read_only: bool = False) -> list[StructuredTool]:
        """Export methods as LangChain tools; `read_only` keeps only lookups."""
        tools: list[StructuredTool] = []
        for spec in self._methods.values():
            if read_only and not spec.read_only:
                continue
            tools.append(
                StructuredTool.from_function(
                    name=spec.name,
                    description=spec.description,
                    args_schema=spec.args_schema,
                    func=self._build_function(spec),
                )
            )
        return tools

    def _build_function(self, spec: MethodSpec) -> Callable[..., str]:
        def _callable(**kwargs: Any) -> str:
            return json.dumps(self.execute_safe(spec.name, kwargs), ensure_ascii=False)

        return _callable

    def _execute_spec(self, spec: MethodSpec, payload: dict[str, Any]) -> dict[str, Any]:
        start = perf_counter()
        error_code: str | None = None
        try:
            return spec.invoke(payload)
        except Exception as exc:
            error_code = getattr(exc, "code", type(exc).__name__)
            raise
        finally:
            if self._observer is not None:
                self._observer(
                    MethodTrace(
                        name=spec.name,
                        input_payload=payload,
                        ok=error_code is None,
                        latency_ms=(perf_counter() - start) * 1000.0,
                        error_code=error_code,
                    )
                )


def _describe(exc: PydanticValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "payload"
        problems.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(problems)
