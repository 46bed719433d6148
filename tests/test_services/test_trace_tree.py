from datetime import datetime, timezone
from itertools import permutations
from types import SimpleNamespace

from app.services.trace_tree import (
    build_step_tree,
    build_trace_view,
    rollup_duration,
    rollup_status,
    walk,
)


def _trace(id, sequence, parent_id=None, status='completed', duration_ms=10):
    return SimpleNamespace(
        id=id,
        parent_id=parent_id,
        sequence=sequence,
        step_type='llm',
        step_name=f'step-{id}',
        status=status,
        started_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        completed_at=None,
        duration_ms=duration_ms,
        input=None,
        output=None,
        token_usage=None,
        error=None,
    )


def _execution(status=None, duration_ms=None):
    return SimpleNamespace(
        id='exec-1',
        agent_id='agent-1',
        status=status,
        triggered_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        completed_at=None,
        duration_ms=duration_ms,
        input='prompt',
        output=None,
        error=None,
    )


def _shape(roots):
    return [(node.id, _shape(node.children)) for node in roots]


TRACES = [
    _trace('a', 1),
    _trace('b', 2, parent_id='a'),
    _trace('c', 3, parent_id='b'),
    _trace('d', 4, parent_id='a'),
    _trace('e', 5),
]


def test_tree_is_independent_of_input_order():
    expected = [('a', [('b', [('c', [])]), ('d', [])]), ('e', [])]
    for ordering in permutations(TRACES):
        assert _shape(build_step_tree(ordering)) == expected


def test_missing_or_later_parent_becomes_root():
    traces = [
        _trace('a', 1, parent_id='b'),
        _trace('b', 2, parent_id='a'),
        _trace('c', 3, parent_id='ghost'),
    ]
    roots = build_step_tree(traces)
    assert _shape(roots) == [('a', [('b', [])]), ('c', [])]


def test_walk_is_depth_first_with_depth():
    flat = [(node.id, depth) for node, depth in walk(build_step_tree(TRACES))]
    assert flat == [('a', 0), ('b', 1), ('c', 2), ('d', 1), ('e', 0)]


def test_rollup_duration_prefers_execution_value():
    traces = [_trace('a', 1, duration_ms=5), _trace('b', 2, duration_ms=None)]
    assert rollup_duration(_execution(duration_ms=0), traces) == 0
    assert rollup_duration(_execution(), traces) == 5
    assert rollup_duration(None, []) == 0


def test_rollup_status_precedence():
    running = _trace('a', 1, status='running')
    failed = _trace('b', 2, status='failed')
    done = _trace('c', 3, status='completed')

    assert rollup_status(_execution(status='completed'), [running]) == 'completed'
    assert rollup_status(_execution(), [done, failed, running]) == 'running'
    assert rollup_status(_execution(), [done, failed]) == 'failed'
    assert rollup_status(_execution(), [done]) == 'completed'
    assert rollup_status(_execution(), []) is None


def test_trace_view_with_no_steps():
    view = build_trace_view(_execution(status='pending'), [])
    assert view['executionId'] == 'exec-1'
    assert view['status'] == 'pending'
    assert view['steps'] == []
    assert view['stepCount'] == 0
    assert view['totalDurationMs'] == 0


def test_trace_view_flattens_steps():
    view = build_trace_view(_execution(status='completed', duration_ms=99), TRACES)
    assert [s['id'] for s in view['steps']] == ['a', 'b', 'c', 'd', 'e']
    assert [s['depth'] for s in view['steps']] == [0, 1, 2, 1, 0]
    assert view['steps'][1]['parentId'] == 'a'
    assert view['totalDurationMs'] == 99
    assert view['triggeredAt'] == '2024-01-01T00:00:00+00:00'
