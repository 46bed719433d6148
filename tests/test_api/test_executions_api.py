import time

import pytest
from fastapi.testclient import TestClient

from app.core.security import create_access_token
from app.database import build_session_factory
from app.main import create_app
from app.services.execution_recorder import ExecutionRecorder
from app.services.schedule_store import ScheduleStore
from app.services.trace_recorder import TraceRecorder


async def _ok(context):
    context.trace.record('message', 'assistant', output='retried')
    return {'success': True, 'output': 'retried'}


@pytest.fixture
def client(engine):
    app = create_app(engine=engine, execute_callback=_ok)
    with TestClient(app) as client:
        client.headers['Authorization'] = f"Bearer {create_access_token('alice')}"
        yield client


@pytest.fixture
def seeded(client, session_factory):
    created = client.post(
        '/api/v1/agents/agent-1/schedules',
        json={'schedule': {'mode': 'interval', 'value': 1, 'unit': 'days'}, 'prompt': 'Report'},
    ).json()
    schedule = ScheduleStore(session_factory).get(created['id'])
    executions = ExecutionRecorder(session_factory)
    traces = TraceRecorder(session_factory)

    done = executions.open(schedule)
    executions.mark_running(done.id)
    root = traces.start_step(done.id, 'agent_switch', 'router')
    child = traces.start_step(done.id, 'llm', 'claude', parent_id=root.id)
    traces.complete_step(child.id, token_usage={'prompt': 4, 'completion': 6, 'total': 10})
    traces.complete_step(root.id)
    executions.complete(done.id, output='report body', conversation_id='conv-9')

    failed = executions.open(schedule)
    executions.mark_running(failed.id)
    traces.start_step(failed.id, 'tool', 'fetch')
    executions.fail(failed.id, 'upstream timeout')

    return {'schedule': schedule, 'done': done, 'failed': failed}


def test_list_and_filter(client, seeded):
    page = client.get('/api/v1/agents/agent-1/executions').json()
    assert page['total'] == 2
    assert {e['status'] for e in page['executions']} == {'completed', 'failed'}
    counts = {e['id']: e['stepCount'] for e in page['executions']}
    assert counts == {seeded['done'].id: 2, seeded['failed'].id: 1}

    failed = client.get('/api/v1/agents/agent-1/executions', params={'status': 'failed'}).json()
    assert [e['id'] for e in failed['executions']] == [seeded['failed'].id]

    by_schedule = client.get(f"/api/v1/agents/agent-1/schedules/{seeded['schedule'].id}/executions").json()
    assert len(by_schedule) == 2


def test_invalid_status_filter_is_400(client, seeded):
    response = client.get('/api/v1/agents/agent-1/executions', params={'status': 'exploded'})
    assert response.status_code == 400


def test_detail_and_trace(client, seeded):
    done_id = seeded['done'].id
    detail = client.get(f'/api/v1/agents/agent-1/executions/{done_id}').json()
    assert detail['status'] == 'completed'
    assert detail['conversationId'] == 'conv-9'
    assert detail['stepCount'] == 2

    trace = client.get(f'/api/v1/agents/agent-1/executions/{done_id}/trace').json()
    assert trace['executionId'] == done_id
    assert trace['status'] == 'completed'
    assert [(s['stepName'], s['depth']) for s in trace['steps']] == [('router', 0), ('claude', 1)]
    assert trace['steps'][1]['tokenUsage']['total'] == 10

    assert client.get(f'/api/v1/agents/agent-2/executions/{done_id}').status_code == 404
    assert client.get('/api/v1/agents/agent-1/executions/missing/trace').status_code == 404


def test_delete_single_execution(client, seeded):
    done_id = seeded['done'].id
    response = client.delete(f'/api/v1/agents/agent-1/executions/{done_id}')
    assert response.json() == {'deleted': True, 'deletedTraces': 2}
    assert client.get(f'/api/v1/agents/agent-1/executions/{done_id}').status_code == 404


def test_bulk_delete(client, seeded):
    response = client.delete('/api/v1/agents/agent-1/executions', params={'status': 'failed'})
    assert response.json() == {'deletedExecutions': 1, 'deletedTraces': 1}
    assert client.get('/api/v1/agents/agent-1/executions').json()['total'] == 1


def test_retry(client, seeded):
    done = client.post(f"/api/v1/agents/agent-1/executions/{seeded['done'].id}/retry")
    assert done.status_code == 409

    response = client.post(f"/api/v1/agents/agent-1/executions/{seeded['failed'].id}/retry")
    assert response.status_code == 202
    retry = response.json()
    assert retry['attempt'] == 2
    assert retry['retryOf'] == seeded['failed'].id

    url = f"/api/v1/agents/agent-1/executions/{retry['id']}"
    deadline = time.monotonic() + 3
    while client.get(url).json()['status'] != 'completed' and time.monotonic() < deadline:
        time.sleep(0.05)
    assert client.get(url).json()['output'] == 'retried'
