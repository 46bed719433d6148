import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault('DATABASE_URL', 'sqlite://')
os.environ.setdefault('APP_ENV', 'test')
os.environ.setdefault('SECRET_KEY', 'test-secret')
os.environ.setdefault('ANTHROPIC_API_KEY', 'x')

import pytest

from app.database import build_engine, build_session_factory, init_db
from app.core.exceptions import RegistrationError
from app.services.trigger_registry import TriggerRegistry


@pytest.fixture
def engine():
    engine = build_engine('sqlite://')
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


class SpyRegistry(TriggerRegistry):
    """Real registry that remembers every register/unregister call."""

    def __init__(self):
        super().__init__()
        self.calls = []
        self.refuse = set()

    def register(self, trigger_id, cron_expression, on_fire, timezone=None):
        self.calls.append(('register', trigger_id, cron_expression))
        if cron_expression in self.refuse:
            raise RegistrationError(f'Refusing {cron_expression}')
        return super().register(trigger_id, cron_expression, on_fire, timezone=timezone)

    async def unregister(self, trigger_id):
        self.calls.append(('unregister', trigger_id))
        return await super().unregister(trigger_id)


@pytest.fixture
def spy_registry_cls():
    return SpyRegistry
