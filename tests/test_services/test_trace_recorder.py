import pytest

from app.core.exceptions import ValidationError
from app.services.trace_recorder import TraceRecorder, truncate_data


@pytest.fixture
def recorder(session_factory):
    return TraceRecorder(session_factory, payload_limit=100)


def test_truncate_data():
    assert truncate_data(None) is None
    assert truncate_data('abc', 10) == 'abc'
    assert truncate_data('a' * 20, 10) == 'a' * 10 + '...[truncated]'
    big = truncate_data({'text': 'x' * 50}, 20)
    assert big['_truncated'] is True
    assert len(big['preview']) == 20
    assert truncate_data({'n': 1}, 20) == {'n': 1}


def test_sequence_is_monotonic_per_execution(recorder):
    first = recorder.start_step('exec-1', 'llm', 'plan')
    second = recorder.start_step('exec-1', 'tool', 'search', parent_id=first.id)
    other = recorder.start_step('exec-2', 'llm', 'plan')

    assert (first.sequence, second.sequence, other.sequence) == (1, 2, 1)
    assert second.parent_id == first.id
    assert first.status == 'running'


def test_parent_must_belong_to_same_execution(recorder):
    foreign = recorder.start_step('exec-2', 'llm', 'plan')
    with pytest.raises(ValidationError):
        recorder.start_step('exec-1', 'tool', 'search', parent_id=foreign.id)
    with pytest.raises(ValidationError):
        recorder.start_step('exec-1', 'tool', 'search', parent_id='missing')


def test_unknown_step_type_is_rejected(recorder):
    with pytest.raises(ValueError):
        recorder.start_step('exec-1', 'sleep', 'nap')


def test_complete_step_is_idempotent_once_terminal(recorder):
    step = recorder.start_step('exec-1', 'llm', 'answer', input='x' * 500)
    assert step.input.endswith('...[truncated]')

    done = recorder.complete_step(
        step.id,
        output={'text': 'hi'},
        token_usage={'prompt': 3, 'completion': 2, 'total': 5},
    )
    assert done.status == 'completed'
    assert done.duration_ms >= 0
    assert done.token_usage['total'] == 5

    again = recorder.complete_step(step.id, status='failed', error='late')
    assert again.status == 'completed'
    assert again.error is None


def test_session_nests_steps_and_fails_open_ones(recorder):
    session = recorder.session('exec-1')
    outer = session.begin('agent_switch', 'supervisor', key='outer')
    inner = session.begin('llm', 'claude')
    assert session.current_parent_id == inner

    session.end(inner, token_usage={'prompt': 1, 'completion': 1, 'total': 2})
    msg = session.record('message', 'assistant', output='done')
    assert session.mark_remaining_failed('execution failed') == 1

    rows = {r.id: r for r in recorder.list_for_execution('exec-1')}
    assert rows[inner].parent_id == outer
    assert rows[msg].parent_id == outer
    assert rows[outer].status == 'failed'
    assert rows[outer].error == 'execution failed'
    assert session.step_count == 3


def test_step_context_manager_records_failure(recorder):
    session = recorder.session('exec-1')
    with pytest.raises(RuntimeError):
        with session.step('tool', 'lookup', input={'q': 'x'}):
            raise RuntimeError('tool down')

    with session.step('llm', 'answer') as step:
        step.output = 'ok'

    rows = recorder.list_for_execution('exec-1')
    assert [(r.step_name, r.status) for r in rows] == [('lookup', 'failed'), ('answer', 'completed')]
    assert rows[0].error == 'tool down'
    assert rows[1].parent_id is None
