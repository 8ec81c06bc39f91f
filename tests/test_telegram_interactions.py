import asyncio

import pytest

from oh_my_telegram.integrations.telegram.adapter import parse_callback_data
from oh_my_telegram.integrations.telegram.interactions import InteractionNotifier
from oh_my_telegram.integrations.telegram.state import ChatSession, SessionRegistry
from telegram_fakes import FakeBot, FakeOpenCode


def make_chat() -> ChatSession:
    registry = SessionRegistry(
        session_prefix="bot", default_agent="sisyphus", working_directory="/work"
    )
    chat = registry.get_or_create(42)
    chat.remote_session_id = "s1"
    return chat


def question_request(request_id: str = "q1", session_id: str = "s1") -> dict:
    return {
        "id": request_id,
        "sessionID": session_id,
        "questions": [
            {
                "header": "Database",
                "question": "Which engine?",
                "options": [{"label": "sqlite"}, {"label": "postgres"}],
            },
            {
                "header": "Cache",
                "question": "Enable caching?",
                "options": [{"label": "yes"}, {"label": "no"}],
            },
        ],
    }


def callback_buttons(message: dict) -> list[str]:
    markup = message["reply_markup"] or {}
    return [
        button["callback_data"]
        for row in markup.get("inline_keyboard", [])
        for button in row
    ]


@pytest.mark.asyncio
async def test_permission_is_notified_once_per_request() -> None:
    bot = FakeBot()
    client = FakeOpenCode()
    client.permissions = [
        {
            "id": "p1",
            "sessionID": "s1",
            "permission": "bash",
            "patterns": ["rm -rf build"],
        },
        {"id": "p2", "sessionID": "other", "permission": "edit"},
    ]
    notifier = InteractionNotifier(bot, client)
    chat = make_chat()

    assert await notifier.poll_and_notify(chat) == 1
    assert await notifier.poll_and_notify(chat) == 0

    assert len(bot.messages) == 1
    message = bot.messages[0]
    assert "Permission: bash" in message["text"]
    assert "- rm -rf build" in message["text"]
    assert callback_buttons(message) == [
        "perm:once:p1",
        "perm:always:p1",
        "perm:reject:p1",
        "perm:retry:p1",
    ]


@pytest.mark.asyncio
async def test_poll_without_remote_session_is_noop() -> None:
    bot = FakeBot()
    client = FakeOpenCode()
    client.permissions = [{"id": "p1", "sessionID": "s1", "permission": "bash"}]
    chat = make_chat()
    chat.remote_session_id = None

    assert await InteractionNotifier(bot, client).poll_and_notify(chat) == 0
    assert bot.messages == []


@pytest.mark.asyncio
async def test_permission_list_failure_does_not_block_questions() -> None:
    bot = FakeBot()
    client = FakeOpenCode()
    client.fail_permission_list = True
    client.questions = [question_request()]
    notifier = InteractionNotifier(bot, client)

    assert await notifier.poll_and_notify(make_chat()) == 1
    assert "Question 1/2" in bot.messages[0]["text"]


@pytest.mark.asyncio
async def test_multi_question_answers_are_submitted_once() -> None:
    bot = FakeBot()
    client = FakeOpenCode()
    client.questions = [question_request()]
    notifier = InteractionNotifier(bot, client)
    chat = make_chat()

    await notifier.poll_and_notify(chat)
    first = parse_callback_data(callback_buttons(bot.messages[0])[1])
    assert first.question_index == 0 and first.option_index == 1

    outcome = await notifier.handle_question_answer(chat, "q1", 0, 1)
    assert not outcome.submitted
    assert client.question_replies == []
    assert "Question 2/2" in bot.messages[-1]["text"]
    assert callback_buttons(bot.messages[-1])[0] == "q:ans:q1:1:0"

    outcome = await notifier.handle_question_answer(chat, "q1", 1, 0)
    assert outcome.submitted
    assert client.question_replies == [
        {"request_id": "q1", "answers": [["postgres"], ["yes"]]}
    ]
    assert notifier.pending_question("q1") is None
    assert bot.messages[-1]["text"] == "✅ Answers submitted."


@pytest.mark.asyncio
async def test_stale_question_selection_expires() -> None:
    bot = FakeBot()
    client = FakeOpenCode()
    client.questions = [question_request()]
    notifier = InteractionNotifier(bot, client)
    chat = make_chat()
    await notifier.poll_and_notify(chat)

    stale = await notifier.handle_question_answer(chat, "q1", 1, 0)
    unknown = await notifier.handle_question_answer(chat, "missing", 0, 0)
    bad_option = await notifier.handle_question_answer(chat, "q1", 0, 9)

    assert stale.expired and unknown.expired and bad_option.expired
    assert stale.toast == "Selection expired"
    assert client.question_replies == []


@pytest.mark.asyncio
async def test_reject_discards_partial_answers() -> None:
    bot = FakeBot()
    client = FakeOpenCode()
    client.questions = [question_request()]
    notifier = InteractionNotifier(bot, client)
    chat = make_chat()
    await notifier.poll_and_notify(chat)
    await notifier.handle_question_answer(chat, "q1", 0, 0)

    assert await notifier.handle_question_reject(chat, "q1")
    assert not await notifier.handle_question_reject(chat, "q1")

    assert client.question_rejects == ["q1"]
    assert client.question_replies == []
    assert notifier.pending_question("q1") is None


@pytest.mark.asyncio
async def test_permission_reply_forwards_decision() -> None:
    client = FakeOpenCode()
    notifier = InteractionNotifier(FakeBot(), client)

    label = await notifier.handle_permission_reply(make_chat(), "p1", "always")

    assert label == "♾️ Always allowed"
    assert client.permission_replies == [{"request_id": "p1", "reply": "always"}]
    with pytest.raises(ValueError):
        await notifier.handle_permission_reply(make_chat(), "p1", "retry")


@pytest.mark.asyncio
async def test_watch_stops_when_event_is_set() -> None:
    bot = FakeBot()
    client = FakeOpenCode()
    client.permissions = [{"id": "p1", "sessionID": "s1", "permission": "bash"}]
    notifier = InteractionNotifier(bot, client, poll_interval_seconds=0.01)
    stop = asyncio.Event()
    watcher = asyncio.create_task(notifier.watch(make_chat(), stop))

    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(watcher, timeout=1)

    assert len(bot.messages) == 1


@pytest.mark.asyncio
async def test_failed_reply_keeps_collected_answers() -> None:
    bot = FakeBot()
    client = FakeOpenCode()
    client.questions = [question_request()]
    notifier = InteractionNotifier(bot, client)
    chat = make_chat()
    await notifier.poll_and_notify(chat)
    await notifier.handle_question_answer(chat, "q1", 0, 1)

    client.fail_question_reply = True
    with pytest.raises(RuntimeError):
        await notifier.handle_question_answer(chat, "q1", 1, 0)

    progress = notifier.pending_question("q1")
    assert progress is not None
    assert progress.answers == [["postgres"], ["yes"]]

    client.fail_question_reply = False
    outcome = await notifier.handle_question_answer(chat, "q1", 1, 1)
    assert outcome.submitted
    assert client.question_replies == [
        {"request_id": "q1", "answers": [["postgres"], ["no"]]}
    ]
    assert notifier.pending_question("q1") is None


@pytest.mark.asyncio
async def test_failed_reject_keeps_request_pending() -> None:
    bot = FakeBot()
    client = FakeOpenCode()
    client.questions = [question_request()]
    notifier = InteractionNotifier(bot, client)
    chat = make_chat()
    await notifier.poll_and_notify(chat)

    client.fail_question_reject = True
    with pytest.raises(RuntimeError):
        await notifier.handle_question_reject(chat, "q1")
    assert notifier.pending_question("q1") is not None

    client.fail_question_reject = False
    assert await notifier.handle_question_reject(chat, "q1")
    assert client.question_rejects == ["q1"]


@pytest.mark.asyncio
async def test_unsent_permission_is_retried_next_tick() -> None:
    bot = FakeBot()
    bot.fail_sends = 1
    client = FakeOpenCode()
    client.permissions = [{"id": "p1", "sessionID": "s1", "permission": "bash"}]
    notifier = InteractionNotifier(bot, client)
    chat = make_chat()

    assert await notifier.poll_and_notify(chat) == 0
    assert await notifier.poll_and_notify(chat) == 1
    assert await notifier.poll_and_notify(chat) == 0
    assert len(bot.messages) == 1


@pytest.mark.asyncio
async def test_unsent_question_is_retried_next_tick() -> None:
    bot = FakeBot()
    bot.fail_sends = 1
    client = FakeOpenCode()
    client.questions = [question_request()]
    notifier = InteractionNotifier(bot, client)
    chat = make_chat()

    assert await notifier.poll_and_notify(chat) == 0
    assert notifier.pending_question("q1") is None
    assert await notifier.poll_and_notify(chat) == 1
    assert "Question 1/2" in bot.messages[0]["text"]
    assert notifier.pending_question("q1") is not None


@pytest.mark.asyncio
async def test_unsent_follow_up_question_restarts_request() -> None:
    bot = FakeBot()
    client = FakeOpenCode()
    client.questions = [question_request()]
    notifier = InteractionNotifier(bot, client)
    chat = make_chat()
    await notifier.poll_and_notify(chat)

    bot.fail_sends = 1
    outcome = await notifier.handle_question_answer(chat, "q1", 0, 0)

    assert outcome.expired
    assert notifier.pending_question("q1") is None
    assert await notifier.poll_and_notify(chat) == 1
    assert "Question 1/2" in bot.messages[-1]["text"]


@pytest.mark.asyncio
async def test_oversized_question_callback_does_not_break_polling() -> None:
    bot = FakeBot()
    client = FakeOpenCode()
    client.questions = [question_request(request_id="q" * 70)]
    client.permissions = [{"id": "p1", "sessionID": "s1", "permission": "bash"}]
    notifier = InteractionNotifier(bot, client)

    assert await notifier.poll_and_notify(make_chat()) == 1
    assert [message["text"].splitlines()[0] for message in bot.messages] == [
        "🔐 Permission requested"
    ]


@pytest.mark.asyncio
async def test_last_question_keeps_buttons_until_reply_succeeds() -> None:
    bot = FakeBot()
    client = FakeOpenCode()
    client.questions = [question_request()]
    notifier = InteractionNotifier(bot, client)
    chat = make_chat()
    await notifier.poll_and_notify(chat)
    await notifier.handle_question_answer(chat, "q1", 0, 0)
    edits_before = len(bot.edits)

    client.fail_question_reply = True
    with pytest.raises(RuntimeError):
        await notifier.handle_question_answer(chat, "q1", 1, 0)
    assert len(bot.edits) == edits_before

    client.fail_question_reply = False
    await notifier.handle_question_answer(chat, "q1", 1, 0)
    assert bot.edits[-1]["text"].endswith("✅ yes")
