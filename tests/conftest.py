import asyncio
import random

import pytest

from lexiquiz.errors import RemoteError
from lexiquiz.session import QuizSession
from lexiquiz.store import InMemorySessionStore
from lexiquiz.vocabulary import VocabularyManager

USER = "user-1"
OTHER_USER = "user-2"


class FlakyStore(InMemorySessionStore):
    """In-memory store whose operations can be switched to fail."""

    def __init__(self):
        super().__init__()
        self.failing = set()
        self.patches = []

    def _check(self, op):
        if op in self.failing:
            raise RemoteError(f"{op} failed")

    async def create(self, session):
        self._check("create")
        return await super().create(session)

    async def patch(self, session_id, fields):
        self._check("patch")
        self.patches.append((session_id, dict(fields)))
        await super().patch(session_id, fields)

    async def fetch_active(self, user_id):
        self._check("fetch_active")
        return await super().fetch_active(user_id)

    async def fetch_finished(self, user_id):
        self._check("fetch_finished")
        return await super().fetch_finished(user_id)


@pytest.fixture
def vocabulary(tmp_path):
    manager = VocabularyManager(str(tmp_path / "vocabulary"))
    manager.add_list(
        USER,
        "animals",
        [
            {"id": "w-cat", "en": "cat", "ru": "кот"},
            {"id": "w-dog", "en": "dog", "ru": "собака"},
        ],
    )
    manager.add_list(
        USER,
        "home",
        [
            {"id": "w-house", "en": "house", "ru": "дом"},
            {"id": "w-table", "en": "table", "ru": "стол"},
            {"id": "w-chair", "en": "chair", "ru": "стул"},
        ],
    )
    manager.add_list(USER, "empty", [])
    # Same list name as USER, and an explicit id that clashes with one of USER's.
    manager.add_list(OTHER_USER, "animals", [{"en": "horse", "ru": "лошадь"}])
    manager.add_list(OTHER_USER, "secret", [{"id": "w-cat", "en": "spy", "ru": "шпион"}])
    return manager


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def make_quiz(vocabulary, store):
    def factory(user_id=USER, **options):
        options.setdefault("feedback_delay", 0)
        options.setdefault("rng", random.Random(7))
        return QuizSession(user_id, vocabulary, store, **options)

    return factory


@pytest.fixture
def run():
    return asyncio.run
