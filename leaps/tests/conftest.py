from datetime import datetime, timedelta, timezone

import pytest

from leaps.config import Settings
from leaps.database import create_db_engine, create_session_factory, init_db
from leaps.ingest import EventIngestor
from leaps.models import UserRole
from leaps.service import PointsService

NOW = datetime(2025, 9, 15, 12, 0, tzinfo=timezone.utc)

AMPLIFY_PAYLOAD = {"peers_trained": 10, "students_trained": 20, "session_date": "2025-09-14"}
LEARN_PAYLOAD = {"provider": "SPL", "course_name": "Elevate AI 1", "completed_at": "2025-09-10"}
EXPLORE_PAYLOAD = {"reflection": "x" * 160, "class_date": "2025-09-12"}


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings():
    return Settings(database_url="sqlite+pysqlite:///:memory:", strict_amplify_quota=True)


@pytest.fixture
def engine(settings):
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def service(session_factory, settings, clock):
    return PointsService(session_factory, settings=settings, clock=clock)


@pytest.fixture
def ingestor(session_factory, settings, clock):
    return EventIngestor(session_factory, settings=settings, clock=clock)


@pytest.fixture
def participant(service):
    return service.ensure_user("user_educator", email="educator@example.com", name="Tara Educator")


@pytest.fixture
def reviewer(service):
    user = service.ensure_user("user_reviewer", email="reviewer@example.com")
    return service.set_user_role(user.id, UserRole.REVIEWER, actor_id="user_admin")
