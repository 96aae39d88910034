"""Shared test fixtures for the Turbozap dispatch core."""
import asyncio
import shutil
import tempfile
from typing import Any

import pytest

from channels.dispatcher import Dispatcher, DispatchError
from config.settings import WorkerConfig
from models.schemas import DispatchJob


GATEWAY_URL = "http://gateway.test/api/sendText"


def make_jobs(*chat_ids: str, session: str = "S1") -> list[DispatchJob]:
    return [
        DispatchJob(
            method="POST",
            url=GATEWAY_URL,
            headers={"Content-Type": "application/json"},
            data={"session": session, "chatId": chat_id, "text": f"Hello {chat_id}"},
        )
        for chat_id in chat_ids
    ]


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class FakeDispatcher(Dispatcher):
    """Records every dispatch; fails for chat ids listed in `fail_for`."""

    def __init__(self, fail_for: tuple[str, ...] = (), delay: float = 0.0):
        self.fail_for = set(fail_for)
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def dispatch(self, method: str, url: str, headers: dict[str, str],
                       body: Any, timeout: float) -> Any:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            chat_id = body["chatId"]
            self.calls.append(chat_id)
            if chat_id in self.fail_for:
                raise DispatchError(
                    "Gateway responded 500 Internal Server Error",
                    status_code=500,
                    body={"message": f"Could not deliver to {chat_id}"},
                )
            return {"id": f"msg_{chat_id}", "ack": 1}
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def data_dir():
    d = tempfile.mkdtemp(prefix="turbozap_test_")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def fast_worker_config() -> WorkerConfig:
    return WorkerConfig(execution_interval=0.0, idle_poll_interval=0.01, dispatch_timeout=1.0)
