from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .telegram import ChatTransport
from .utils import log_event

WAITING_TEXT = "⏳ **Waiting for AI analysis...**"


class StatusReporter:
    """Owns the single progress message shown to the user for one job.

    ``start`` sends the message threaded to the triggering one and ``update``
    edits it in place. When no message id came back from ``start``, updates
    are sent as new standalone messages instead. Once ``finish`` has run,
    nothing else is written for this job.
    """

    def __init__(
        self,
        transport: ChatTransport,
        chat_id: int,
        reply_to: int | None,
        heartbeat_seconds: float = 10.0,
        logger: logging.Logger | None = None,
        message_id: int | None = None,
    ) -> None:
        self._transport = transport
        self._chat_id = chat_id
        self._reply_to = reply_to
        self._heartbeat_seconds = heartbeat_seconds
        self._logger = logger or logging.getLogger("vidlens.status")
        self._message_id = message_id
        self._finalized = False

    @property
    def message_id(self) -> int | None:
        return self._message_id

    @property
    def finalized(self) -> bool:
        return self._finalized

    async def start(self, text: str) -> int | None:
        self._message_id = await self._transport.send_message(self._chat_id, text, reply_to=self._reply_to)
        if self._message_id is None:
            log_event(self._logger, logging.WARNING, "status_start_failed", chat_id=self._chat_id)
        return self._message_id

    async def update(self, text: str) -> None:
        if self._finalized:
            log_event(
                self._logger,
                logging.DEBUG,
                "status_update_dropped",
                chat_id=self._chat_id,
                message_id=self._message_id,
            )
            return
        await self._write(text)

    async def finish(self, text: str) -> None:
        if self._finalized:
            log_event(self._logger, logging.DEBUG, "status_finish_dropped", chat_id=self._chat_id)
            return
        self._finalized = True
        await self._write(text)

    @asynccontextmanager
    async def heartbeat(self, label: str = WAITING_TEXT) -> AsyncIterator[None]:
        """Edit the status message with elapsed time while the block runs.

        The heartbeat task is cancelled and awaited before the block's caller
        regains control.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()

        if self._message_id is None:
            # Without a message to edit, beats would each become a new message.
            yield
            return

        async def beat() -> None:
            while True:
                await asyncio.sleep(self._heartbeat_seconds)
                if self._finalized:
                    return
                elapsed = int(loop.time() - started)
                try:
                    await self.update(f"{label} ({elapsed}s elapsed)")
                except Exception as exc:  # noqa: BLE001
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "heartbeat_edit_failed",
                        chat_id=self._chat_id,
                        error=str(exc),
                    )

        task = asyncio.create_task(beat())
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise

    async def _write(self, text: str) -> None:
        if self._message_id is None:
            await self._transport.send_message(self._chat_id, text)
            return
        await self._transport.edit_message(self._chat_id, self._message_id, text)
