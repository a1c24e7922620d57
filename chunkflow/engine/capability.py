from __future__ import annotations

import inspect
from typing import Any, Dict, Protocol, Union, runtime_checkable

from pydantic import BaseModel, Field

from chunkflow.core.errors import ParseError


class CapabilityRequest(BaseModel):
    input: str
    capability: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)


class CapabilityResponse(BaseModel):
    output: str
    metrics: Dict[str, Any] = Field(default_factory=dict)

    @property
    def tokens_used(self) -> int:
        try:
            return int(self.metrics.get("tokens_used") or self.metrics.get("tokensUsed") or 0)
        except (TypeError, ValueError):
            return 0


@runtime_checkable
class CapabilityExecutor(Protocol):
    async def execute(self, request: CapabilityRequest) -> Union[CapabilityResponse, Dict[str, Any], str]: ...


def normalize_response(raw: Any, *, capability: str) -> CapabilityResponse:
    if isinstance(raw, CapabilityResponse):
        return raw
    if isinstance(raw, str):
        return CapabilityResponse(output=raw)
    if isinstance(raw, dict) and "output" in raw:
        output = raw.get("output")
        return CapabilityResponse(
            output=output if isinstance(output, str) else str(output),
            metrics=dict(raw.get("metrics") or {}),
        )
    raise ParseError(
        f"Capability '{capability}' returned an unsupported response type: {type(raw).__name__}",
        details={"capability": capability},
    )


async def execute_capability(executor: Any, request: CapabilityRequest) -> Any:
    """Calls an executor object or a bare callable; sync results are accepted."""
    call = getattr(executor, "execute", None)
    target = call if callable(call) else executor
    result = target(request)
    if inspect.isawaitable(result):
        result = await result
    return result
