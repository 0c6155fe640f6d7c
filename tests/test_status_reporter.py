import asyncio

import pytest

from vidlens.status import WAITING_TEXT, StatusReporter


async def test_heartbeat_never_edits_after_finish(transport):
    reporter = StatusReporter(transport, chat_id=1, reply_to=42, heartbeat_seconds=0.01)
    await reporter.start("Downloading")

    async with reporter.heartbeat():
        await asyncio.sleep(0.05)
    await reporter.finish("Final result")
    await asyncio.sleep(0.05)

    edits = transport.of_kind("edit")
    heartbeats = [call for call in edits if call[3].startswith(WAITING_TEXT)]
    assert heartbeats
    assert "elapsed" in heartbeats[0][3]
    assert edits[-1][3] == "Final result"


async def test_updates_after_finish_are_dropped(transport):
    reporter = StatusReporter(transport, chat_id=1, reply_to=42)
    await reporter.start("Downloading")
    await reporter.finish("Done")
    await reporter.update("late")
    await reporter.finish("again")

    assert [call[3] for call in transport.of_kind("edit")] == ["Done"]
    assert reporter.finalized


async def test_start_replies_to_trigger_message(transport):
    reporter = StatusReporter(transport, chat_id=1, reply_to=42)
    message_id = await reporter.start("Downloading")

    assert message_id == reporter.message_id
    assert transport.calls[0][:4] == ("send", 1, "Downloading", 42)


async def test_updates_become_messages_without_status_id(transport):
    transport._send_ids = [None]
    reporter = StatusReporter(transport, chat_id=1, reply_to=42, heartbeat_seconds=0.01)
    await reporter.start("Downloading")

    async with reporter.heartbeat():
        await asyncio.sleep(0.03)
    await reporter.update("Waiting")
    await reporter.finish("Result")

    assert transport.of_kind("edit") == []
    sent = [call[2] for call in transport.of_kind("send")]
    assert sent == ["Downloading", "Waiting", "Result"]


async def test_heartbeat_survives_edit_errors():
    class FlakyTransport:
        def __init__(self):
            self.edits = 0

        async def send_message(self, chat_id, text, reply_to=None, button=None):
            return 10

        async def edit_message(self, chat_id, message_id, text):
            self.edits += 1
            raise RuntimeError("edit blew up")

    flaky = FlakyTransport()
    reporter = StatusReporter(flaky, chat_id=1, reply_to=None, heartbeat_seconds=0.01)
    await reporter.start("Downloading")
    async with reporter.heartbeat():
        await asyncio.sleep(0.05)

    assert flaky.edits >= 2


async def test_cancelling_the_job_propagates_through_heartbeat(transport):
    reporter = StatusReporter(transport, chat_id=1, reply_to=42, heartbeat_seconds=0.01)
    await reporter.start("Downloading")
    entered = asyncio.Event()

    async def job():
        async with reporter.heartbeat():
            entered.set()
            await asyncio.sleep(10)

    task = asyncio.create_task(job())
    await entered.wait()
    await asyncio.sleep(0.03)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    edits_at_cancel = len(transport.of_kind("edit"))
    await asyncio.sleep(0.05)
    assert len(transport.of_kind("edit")) == edits_at_cancel
