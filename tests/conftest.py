import fnmatch
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio

import db
from app.jobs.queue import JobQueue


class FakeRedis:
    """The handful of Redis commands the job queue uses, in memory."""

    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.lists = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value.encode() if isinstance(value, str) else value
        self.ttls[key] = ex
        return True

    def get(self, key):
        return self.values.get(key)

    def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += self.values.pop(key, None) is not None
            self.ttls.pop(key, None)
        return removed

    def lpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, value.encode() if isinstance(value, str) else value)
        return len(items)

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    def keys(self, pattern="*"):
        return [k for k in self.values if fnmatch.fnmatch(k, pattern)]


class FakeControl:
    def __init__(self):
        self.revoked = []
        self.fail = False

    def revoke(self, task_id):
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.revoked.append(task_id)


class FakeCelery:
    """Records send_task calls instead of talking to a broker."""

    def __init__(self):
        self.sent = []
        self.control = FakeControl()
        self.fail_send = False

    def send_task(self, name, kwargs=None, countdown=None, task_id=None, queue=None):
        if self.fail_send:
            raise ConnectionError("broker unreachable")
        call = SimpleNamespace(name=name, kwargs=kwargs, countdown=countdown, task_id=task_id, queue=queue)
        self.sent.append(call)
        return SimpleNamespace(id=task_id)

    def sent_for(self, queue):
        return [c for c in self.sent if c.queue == queue]


class FakeTransport:
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def send_message(self, chat_id, thread_id, text):
        if self.error is not None:
            raise self.error
        self.sent.append((chat_id, thread_id, text))
        return len(self.sent)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_celery():
    return FakeCelery()


@pytest.fixture
def queue(fake_celery, fake_redis):
    return JobQueue(fake_celery, fake_redis, idempotency_ttl=3600)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def now():
    return datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def database(tmp_path, monkeypatch):
    """A fresh SQLite file database with all tables created."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await db.dispose_engine()
    await db.create_all()
    yield
    await db.dispose_engine()


@pytest_asyncio.fixture
async def topic(database):
    return await db.insert_topic(-1001234, 42, "Planning", tz_name="Europe/Berlin")
