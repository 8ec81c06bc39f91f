import pytest

from oh_my_telegram.integrations.telegram.progress import (
    TaskNotifier,
    TaskStatus,
    format_elapsed,
    format_uptime,
)
from telegram_fakes import FakeBot


def test_format_elapsed() -> None:
    assert format_elapsed(-3) == "0s"
    assert format_elapsed(12.7) == "12s"
    assert format_elapsed(75) == "1m 15s"
    assert format_elapsed(3_725) == "1h 2m"


def test_format_uptime() -> None:
    assert format_uptime(5) == "5s"
    assert format_uptime(65) == "1m 5s"
    assert format_uptime(3_723) == "1h 2m 3s"


class StepClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_task_status_sends_then_edits() -> None:
    bot = FakeBot()
    clock = StepClock()
    status = TaskStatus(bot, 42, clock=clock)

    await status.start("oracle")
    await status.start("oracle")
    clock.now += 12
    await status.complete()

    assert bot.texts() == ["⏳ Working (oracle)…"]
    assert bot.edits == [{"chat_id": 42, "message_id": 1, "text": "✅ Done in 12s"}]


@pytest.mark.asyncio
async def test_task_status_failure_text() -> None:
    bot = FakeBot()
    clock = StepClock()
    status = TaskStatus(bot, 42, clock=clock)
    await status.start("sisyphus")
    clock.now += 3
    await status.fail()

    assert bot.edits[-1]["text"] == "❌ Failed after 3s"


@pytest.mark.asyncio
async def test_disabled_notifier_sends_nothing() -> None:
    bot = FakeBot()
    status = TaskNotifier(bot, enabled=False).create_task(42)
    await status.start("oracle")
    await status.complete()

    assert bot.messages == []
    assert bot.edits == []
