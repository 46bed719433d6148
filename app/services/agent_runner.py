"""Default execution callback: send the schedule prompt to Claude."""
from __future__ import annotations

import logging
from typing import Any, Dict

from app.config import settings
from app.core.anthropic_client import get_anthropic_client
from app.models import StepType
from app.services.scheduler_runtime import ExecutionContext, ExecutionResult

logger = logging.getLogger(__name__)


def _token_usage(message: Any) -> Dict[str, int] | None:
    usage = getattr(message, "usage", None)
    if usage is None:
        return None
    prompt = int(getattr(usage, "input_tokens", 0) or 0)
    completion = int(getattr(usage, "output_tokens", 0) or 0)
    return {"prompt": prompt, "completion": completion, "total": prompt + completion}


def _text(message: Any) -> str:
    parts = [getattr(block, "text", "") for block in getattr(message, "content", None) or []]
    return "".join(parts).strip()


async def run_agent_prompt(context: ExecutionContext) -> ExecutionResult:
    client = get_anthropic_client()
    with context.trace.step(
        StepType.LLM,
        settings.agent_model,
        input={"prompt": context.prompt},
        metadata={"agentId": context.agent_id, "attempt": context.attempt},
    ) as step:
        message = await client.messages.create(
            model=settings.agent_model,
            max_tokens=settings.agent_max_tokens,
            messages=[{"role": "user", "content": context.prompt}],
        )
        output = _text(message)
        step.output = {"text": output, "stopReason": getattr(message, "stop_reason", None)}
        step.token_usage = _token_usage(message)

    context.trace.record(StepType.MESSAGE, "assistant", output=output)
    logger.info("Agent %s answered execution %s", context.agent_id, context.execution_id)
    return ExecutionResult(
        success=True,
        output=output,
        conversation_id=getattr(message, "id", None),
    )
