"""
Rebuild the step tree of one execution from its flat trace rows.

Rows may arrive in any order; they are sorted by sequence and each row is
attached to its parent. A parent always has a lower sequence than its
children, so a row whose parent is missing or not earlier is kept as a root
and the result stays acyclic.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from app.core.clock import as_utc
from app.models import ExecutionTrace, TraceStatus, TriggerExecution

logger = logging.getLogger(__name__)


@dataclass
class TraceNode:
    trace: ExecutionTrace
    children: List["TraceNode"] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.trace.id

    @property
    def sequence(self) -> int:
        return self.trace.sequence


def build_step_tree(traces: Iterable[ExecutionTrace]) -> List[TraceNode]:
    ordered = sorted(traces, key=lambda t: t.sequence)
    nodes: Dict[str, TraceNode] = {t.id: TraceNode(t) for t in ordered}
    roots: List[TraceNode] = []

    for trace in ordered:
        node = nodes[trace.id]
        parent = nodes.get(trace.parent_id) if trace.parent_id else None
        if trace.parent_id and parent is None:
            logger.warning(
                "Trace %s references unknown parent %s; treating as root",
                trace.id,
                trace.parent_id,
            )
        elif parent is not None and parent.sequence >= trace.sequence:
            logger.warning(
                "Trace %s (seq %s) has parent %s with seq %s; treating as root",
                trace.id,
                trace.sequence,
                parent.id,
                parent.sequence,
            )
            parent = None

        if parent is None:
            roots.append(node)
        else:
            parent.children.append(node)
    return roots


def walk(roots: Sequence[TraceNode], depth: int = 0) -> Iterator[tuple[TraceNode, int]]:
    """Depth-first, children in sequence order."""
    for node in roots:
        yield node, depth
        yield from walk(node.children, depth + 1)


def rollup_duration(execution: Optional[TriggerExecution], traces: Sequence[ExecutionTrace]) -> int:
    if execution is not None and execution.duration_ms is not None:
        return execution.duration_ms
    return sum(t.duration_ms or 0 for t in traces)


def rollup_status(execution: Optional[TriggerExecution], traces: Sequence[ExecutionTrace]) -> Optional[str]:
    # Precedence: execution status, then running > failed > completed.
    if execution is not None and execution.status:
        return execution.status
    if not traces:
        return None
    statuses = {t.status for t in traces}
    if TraceStatus.RUNNING.value in statuses:
        return TraceStatus.RUNNING.value
    if TraceStatus.FAILED.value in statuses:
        return TraceStatus.FAILED.value
    return TraceStatus.COMPLETED.value


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def serialize_step(trace: ExecutionTrace, depth: int = 0) -> Dict[str, Any]:
    return {
        "id": trace.id,
        "parentId": trace.parent_id,
        "sequence": trace.sequence,
        "depth": depth,
        "stepType": trace.step_type,
        "stepName": trace.step_name,
        "status": trace.status,
        "startedAt": _iso(trace.started_at),
        "completedAt": _iso(trace.completed_at),
        "durationMs": trace.duration_ms,
        "input": trace.input,
        "output": trace.output,
        "tokenUsage": trace.token_usage,
        "error": trace.error,
    }


def build_trace_view(execution: TriggerExecution, traces: Sequence[ExecutionTrace]) -> Dict[str, Any]:
    """Tree view payload for one execution; works with zero trace rows."""
    roots = build_step_tree(traces)
    steps = [serialize_step(node.trace, depth) for node, depth in walk(roots)]
    return {
        "executionId": execution.id,
        "agentId": execution.agent_id,
        "status": rollup_status(execution, traces),
        "triggeredAt": _iso(execution.triggered_at),
        "completedAt": _iso(execution.completed_at),
        "totalDurationMs": rollup_duration(execution, traces),
        "stepCount": len(steps),
        "input": execution.input,
        "output": execution.output,
        "error": execution.error,
        "steps": steps,
    }
