"""Shared fakes for chronoline tests.

FakeBackend stands in for the model backend: each model key has a queue
of scripted replies consumed one per generation. A reply is a string
(returned by ``text()`` or streamed as one fragment), a list of strings
or Fragments (streamed fragment by fragment), or an exception (raised
when reached).
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest

from chronoline.exceptions import BackendError
from chronoline.providers.base import Generation, ModelBackend, ModelSession
from chronoline.schemas.config import AppConfig, ModelConfig
from chronoline.schemas.streaming import Fragment, Role


class FakeGeneration(Generation):
    def __init__(self, session: FakeSession, reply: Any, role: Role) -> None:
        self._session = session
        self._reply = reply
        self._role = role
        history = session.messages
        self._prefill = ""
        if history and history[-1].role == Role.ASSISTANT:
            self._prefill = history[-1].text

    async def text(self) -> str:
        if isinstance(self._reply, BaseException):
            raise self._reply
        if isinstance(self._reply, list):
            text = "".join(
                item.text if isinstance(item, Fragment) else item
                for item in self._reply
                if not isinstance(item, BaseException)
            )
        else:
            text = self._reply
        self._session.record_reply(text, self._role)
        return text

    async def stream(self) -> AsyncIterator[Fragment]:
        if self._prefill:
            yield Fragment(text=self._prefill, hidden=True, role=self._role)

        items = self._reply if isinstance(self._reply, list) else [self._reply]
        produced: list[str] = []
        for item in items:
            if isinstance(item, BaseException):
                raise item
            fragment = item if isinstance(item, Fragment) else Fragment(text=item, role=self._role)
            self._session.fragments_yielded += 1
            if not fragment.hidden:
                produced.append(fragment.text)
            yield fragment
        self._session.record_reply("".join(produced), self._role)


class FakeSession(ModelSession):
    def __init__(self, config: ModelConfig, backend: FakeBackend, key: str) -> None:
        super().__init__(config)
        self._backend = backend
        self.key = key
        self.release_count = 0
        self.fragments_yielded = 0

    def _generate(self, role: Role) -> Generation:
        queue = self._backend.replies.get(self.key, [])
        if not queue:
            raise BackendError(f"No scripted reply left for {self.key}")
        return FakeGeneration(self, queue.pop(0), role)

    async def _release(self) -> None:
        self.release_count += 1


class FakeBackend(ModelBackend):
    def __init__(
        self,
        replies: dict[str, list[Any]] | None = None,
        *,
        open_errors: dict[str, BaseException] | None = None,
    ) -> None:
        self.replies = {key: list(value) for key, value in (replies or {}).items()}
        self.open_errors = open_errors or {}
        self.sessions: list[FakeSession] = []

    async def open(self, model_key: str) -> FakeSession:
        if model_key in self.open_errors:
            raise self.open_errors[model_key]
        config = ModelConfig(
            provider="fake",
            model=f"fake/{model_key}",
            display_name=f"Fake {model_key}",
            api_key_env="FAKE_API_KEY",
        )
        session = FakeSession(config, self, model_key)
        self.sessions.append(session)
        return session

    def sessions_for(self, key: str) -> list[FakeSession]:
        return [s for s in self.sessions if s.key == key]


TIMELINE_FRAGMENTS = [
    '{"events": [',
    '{"timeRange": "1912-04-10", "descr',
    'iption": "Titanic departs Southampton"},',
    ' {"timeRange": "1912-04-14", "description": "Collision with iceberg"}',
    "]}",
    "\n```",
]

REJECTION_FRAGMENTS = [
    '{"rejec',
    'tion": "I\'m sorry, but a birthday party',
    ' is not a historical event."}',
]


@pytest.fixture()
def app_config() -> AppConfig:
    return AppConfig(
        classifier_model="classifier",
        generator_model="generator",
        system_prompt="You are a helpful assistant.\n\n",
    )


@pytest.fixture()
def historical_backend() -> FakeBackend:
    return FakeBackend({
        "classifier": ["yes"],
        "generator": [
            "April 10, 1912: departs. April 14: hits iceberg. April 15: sinks.",
            list(TIMELINE_FRAGMENTS),
        ],
    })


@pytest.fixture()
def rejection_backend() -> FakeBackend:
    return FakeBackend({
        "classifier": ["no"],
        "generator": [list(REJECTION_FRAGMENTS)],
    })
