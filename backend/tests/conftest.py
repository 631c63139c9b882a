import asyncio
from datetime import datetime, timedelta

import pytest
from mongomock_motor import AsyncMongoMockClient

from donor_crm.db.init import init_db
from donor_crm.services.notifications import NotificationSender

T0 = datetime(2024, 3, 1, 9, 0, 0)


class FrozenClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingSender(NotificationSender):
    """Collects every send; optionally fails or hangs."""

    def __init__(self, fail: bool = False, hang: bool = False):
        self.fail = fail
        self.hang = hang
        self.sent = []

    async def _record(self, channel, to, **payload):
        if self.hang:
            await asyncio.sleep(3600)
        if self.fail:
            raise RuntimeError(f"{channel} gateway unavailable")
        self.sent.append({"channel": channel, "to": to, **payload})
        return {"delivered": True, "mode": "test"}

    async def send_email(self, to, subject, html, text=None):
        return await self._record("email", to, subject=subject, html=html)

    async def send_sms(self, to, body):
        return await self._record("sms", to, body=body)

    async def send_whatsapp(self, to, body):
        return await self._record("whatsapp", to, body=body)


async def connect_test_db():
    await init_db(client=AsyncMongoMockClient(), db_name="donor_crm_test")


@pytest.fixture
def run_db():
    """Run a coroutine function against a fresh in-memory database."""

    def run(coro_fn):
        async def main():
            await connect_test_db()
            return await coro_fn()

        return asyncio.run(main())

    return run


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def sender():
    return RecordingSender()
