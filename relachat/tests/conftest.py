from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from relachat.main import (
    AUTH_SERVICE,
    COMPLETION_RELAY,
    MESSAGES_STORE,
    RATE_LIMITER,
    UPLOAD_HANDLER,
    USERS_STORE,
    app,
)


class StubCompletionProvider:
    def __init__(self, reply: str = "Hello from Rela.") -> None:
        self.reply = reply
        self.error: Optional[Exception] = None
        self.prompts: List[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture(autouse=True)
def reset_state(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(USERS_STORE, "path", str(tmp_path / "users.json"))
    monkeypatch.setattr(MESSAGES_STORE, "path", str(tmp_path / "messages.json"))
    monkeypatch.setattr(UPLOAD_HANDLER, "directory", str(tmp_path / "uploads"))
    monkeypatch.setattr(AUTH_SERVICE, "rounds", 4)
    RATE_LIMITER.hits.clear()


@pytest.fixture()
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture()
def completion_provider(monkeypatch) -> StubCompletionProvider:
    provider = StubCompletionProvider()
    monkeypatch.setattr(COMPLETION_RELAY, "provider", provider)
    return provider
