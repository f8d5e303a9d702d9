"""Shared test fixtures for LMS Engage."""
import pytest
import pytest_asyncio
from datetime import datetime, timezone

from backend.connector import StaticUserDirectory
from channels.base import ChannelRegistry
from channels.in_app_adapter import InAppSender
from config.settings import AssistantConfig, ChannelConfig, QueueConfig, Settings
from database.seed import seed_all
from database.session import build_engine, build_session_factory, create_tables
from database.store import SqlStore
from database.store_memory import InMemoryStore
from job_queue.notification_queue import NotificationQueue
from job_queue.preferences import PreferenceGate
from models.schemas import ChannelType, NotificationTemplate
from templates.registry import TemplateRegistry


# A fixed instant keeps quiet-hours and backoff assertions deterministic
NOON_UTC = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOON_UTC


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(claim_timeout_seconds=300, retry_backoff_base=60, retry_backoff_cap=3600)


@pytest.fixture
def channel_configs() -> dict[str, ChannelConfig]:
    # rate_per_second=0 disables the token bucket so tests never wait on it
    return {
        "email": ChannelConfig(concurrency=4, batch_size=10, max_retries=3, rate_per_second=0),
        "push": ChannelConfig(concurrency=4, batch_size=10, max_retries=2, rate_per_second=0),
        "in_app": ChannelConfig(concurrency=4, batch_size=10, max_retries=2, rate_per_second=0),
        "sms": ChannelConfig(enabled=False, rate_per_second=0),
    }


@pytest.fixture
def settings(queue_config, channel_configs) -> Settings:
    return Settings(
        timezone="UTC",
        queue=queue_config,
        assistant=AssistantConfig(escalation_threshold=0.6, fallback_escalation_threshold=2),
        channels=channel_configs,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest_asyncio.fixture
async def sql_store():
    engine = build_engine("sqlite:///:memory:")
    await create_tables(engine)
    yield SqlStore(session_factory=build_session_factory(engine))
    await engine.dispose()


@pytest_asyncio.fixture
async def sql_file_store(tmp_path):
    """File-backed SQLite: one connection per session, so claims really contend."""
    engine = build_engine(f"sqlite:///{tmp_path / 'engage.db'}")
    await create_tables(engine)
    yield SqlStore(session_factory=build_session_factory(engine))
    await engine.dispose()


@pytest_asyncio.fixture
async def seeded_store(store):
    await seed_all(store)
    return store


@pytest.fixture
def registry(store) -> TemplateRegistry:
    return TemplateRegistry(store)


@pytest.fixture
def email_template() -> NotificationTemplate:
    return NotificationTemplate(
        name="course_completed",
        channel=ChannelType.EMAIL,
        subject_template="Congratulations {{userName}}!",
        body_template="You have completed {{courseTitle}}. Download your certificate!",
        variables=["userName", "courseTitle"],
    )


@pytest.fixture
def in_app_template() -> NotificationTemplate:
    return NotificationTemplate(
        name="quiz_completed",
        channel=ChannelType.IN_APP,
        body_template="Quiz completed with score: {{score}}%",
        variables=["score"],
    )


@pytest_asyncio.fixture
async def queue(store, registry, email_template, in_app_template, queue_config, channel_configs):
    await registry.register(email_template)
    await registry.register(in_app_template)
    return NotificationQueue(store, registry, queue_config, channel_configs)


@pytest.fixture
def gate(store) -> PreferenceGate:
    return PreferenceGate(store, default_timezone="UTC")


@pytest.fixture
def directory() -> StaticUserDirectory:
    return StaticUserDirectory({
        "u-ana": {"email": "ana@acc-lms.example", "phone": "+573001234567", "push_token": "tok-ana-0001"},
        "u-luis": {"email": "luis@acc-lms.example"},
    })


@pytest.fixture
def in_app_registry(channel_configs) -> ChannelRegistry:
    registry = ChannelRegistry()
    registry.register(InAppSender(channel_configs["in_app"]))
    return registry
