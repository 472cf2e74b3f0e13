import threading
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine

from feedlens.config import AppConfig
from feedlens.errors import TransientProviderError
from feedlens.models.db import Article, Feed, FeedSubscription
from feedlens.services.database import build_engine, create_session_factory, init_database, session_scope
from feedlens.services.retry import BackoffPolicy
from feedlens.services.storage import PipelineStore
from feedlens.utils.dates import utcnow
from feedlens.utils.text import content_hash

DIMENSIONS = 4


class FakeEmbeddingProvider:
    """Returns a vector chosen by substring match; raises queued errors first."""

    name = "ollama"
    model = "all-minilm"

    def __init__(self, vectors=None, default=None, errors=None):
        self.vectors = dict(vectors or {})
        self.default = list(default or [1.0, 0.0, 0.0, 0.0])
        self.errors = list(errors or [])
        self.calls = []
        self._lock = threading.Lock()

    def embed(self, text):
        with self._lock:
            self.calls.append(text)
            error = self.errors.pop(0) if self.errors else None
        if error is not None:
            raise error
        for key, vector in self.vectors.items():
            if key in text:
                return list(vector), len(text.split())
        return list(self.default), len(text.split())


class FailingEmbeddingProvider:
    name = "ollama"
    model = "all-minilm"

    def __init__(self, status_code=500):
        self.status_code = status_code
        self.calls = 0

    def embed(self, text):
        self.calls += 1
        raise TransientProviderError(f"HTTP {self.status_code}: server error", status_code=self.status_code)


class FakeLabelingProvider:
    name = "ollama"
    model = "llama3.2:3b"

    def __init__(self, response="TOPIC: Budget deal clears Congress\nSUMMARY: Lawmakers approved the federal budget bill.", errors=None):
        self.response = response
        self.errors = list(errors or [])
        self.prompts = []

    def complete(self, prompt):
        self.prompts.append(prompt)
        if self.errors:
            raise self.errors.pop(0)
        return self.response


class RecordingSleep:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class Seeder:
    """Inserts feeds, subscriptions and articles straight through the ORM."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def feed(self, name, subscribers=()):
        with session_scope(self.session_factory) as session:
            feed = Feed(name=name)
            session.add(feed)
            session.flush()
            for user_id in subscribers:
                session.add(FeedSubscription(user_id=user_id, feed_id=feed.id))
            return feed.id

    def subscribe(self, user_id, feed_id):
        with session_scope(self.session_factory) as session:
            session.add(FeedSubscription(user_id=user_id, feed_id=feed_id))

    def article(self, feed_id, title, excerpt=None, hours_ago=1.0, embedding=None, published_at=None, dated=True):
        if published_at is None and dated:
            published_at = utcnow() - timedelta(hours=hours_ago)
        with session_scope(self.session_factory) as session:
            article = Article(
                feed_id=feed_id,
                title=title,
                excerpt=excerpt,
                published_at=published_at,
                embedding_status="pending",
            )
            if embedding is not None:
                article.embedding = list(embedding)
                article.embedding_status = "completed"
                article.content_hash = content_hash(title, excerpt)
            session.add(article)
            session.flush()
            return article.id

    def get_article(self, article_id):
        with session_scope(self.session_factory) as session:
            return session.get(Article, article_id)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_database(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def threaded_session_factory(tmp_path):
    """File-backed SQLite with a connection per thread, for tests that run background loops."""

    engine = create_engine(f"sqlite:///{tmp_path / 'feedlens.db'}", connect_args={"check_same_thread": False, "timeout": 15})
    init_database(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return PipelineStore(session_factory)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def sleeps():
    return RecordingSleep()


@pytest.fixture
def policy(sleeps):
    return BackoffPolicy(sleep=sleeps)


@pytest.fixture
def config():
    return AppConfig(
        _env_file=None,
        database_url="sqlite://",
        ollama_host="",
        embedding_dimensions=DIMENSIONS,
    )


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 10, 15, 30, tzinfo=UTC))
