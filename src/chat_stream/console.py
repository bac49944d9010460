from __future__ import annotations

import asyncio
import signal

from loguru import logger

from chat_stream.client import StreamRequest
from chat_stream.commands.router import CommandRouter
from chat_stream.errors import AdmissionDeniedError
from chat_stream.persistence import CheckpointStore
from chat_stream.services.checkpoint_report import CheckpointReport
from chat_stream.session import (
    Aborted,
    AttachmentAdded,
    Completed,
    ConversationAssigned,
    Delta,
    Errored,
    Notification,
    StatusChanged,
)
from chat_stream.spinner import Spinner
from chat_stream.stream_engine import StreamEngine, StreamTurn


class ChatConsole:
    _LINE_PREFIX = "assistant> "

    def __init__(
        self,
        *,
        engine: StreamEngine,
        admission_key: str,
        checkpoint_store: CheckpointStore | None,
    ):
        self._engine = engine
        self._admission_key = admission_key
        self._checkpoint_store = checkpoint_store
        self._history: list[dict] = []
        self._conversation_id: str | None = None
        self._report = CheckpointReport(line_prefix=self._LINE_PREFIX)
        self._command_router = CommandRouter(
            on_help=self._on_help,
            on_checkpoints=self._on_checkpoints,
            on_show=self._on_show,
            on_unknown=self._on_unknown,
        )

    async def handle(self, user_message: str) -> None:
        if await self._command_router.try_handle(user_message):
            return

        request = StreamRequest(
            message=user_message,
            conversation_history=list(self._history),
            conversation_id=self._conversation_id,
        )
        try:
            turn = self._engine.open_turn(request, admission_key=self._admission_key)
        except AdmissionDeniedError as ex:
            print(f"{self._LINE_PREFIX}[Rate limited: try again after {ex.decision.reset_at} (epoch ms)]")
            return

        final_text = await self._render_turn(turn)
        self._history.append({"role": "user", "content": user_message})
        if final_text:
            self._history.append({"role": "assistant", "content": final_text})

    async def _render_turn(self, turn: StreamTurn) -> str:
        spinner = Spinner(prefix=self._LINE_PREFIX)
        spinner.start()
        attachments: list = []
        loop = asyncio.get_running_loop()
        signal_installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, turn.cancel)
            signal_installed = True
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler unavailable; Ctrl+C will cancel the task instead")

        try:
            async for notification in turn:
                self._render(notification, spinner, attachments)
        finally:
            spinner.stop()
            if signal_installed:
                loop.remove_signal_handler(signal.SIGINT)

        for payload in attachments:
            print(f"{self._LINE_PREFIX}[attachment] {payload}")
        return turn.session.accumulated_text

    def _render(self, notification: Notification, spinner: Spinner, attachments: list) -> None:
        if isinstance(notification, StatusChanged):
            if spinner.running and notification.message:
                spinner.set_label(f" {notification.message}...")
        elif isinstance(notification, Delta):
            spinner.stop()
            print(notification.fragment, end="", flush=True)
        elif isinstance(notification, AttachmentAdded):
            attachments.append(notification.payload)
        elif isinstance(notification, ConversationAssigned):
            self._conversation_id = notification.conversation_id
        elif isinstance(notification, Completed):
            spinner.stop()
            latency = f" ({notification.latency_ms:g} ms)" if notification.latency_ms is not None else ""
            print(f"\n{self._LINE_PREFIX}[done{latency}]")
        elif isinstance(notification, Errored):
            spinner.stop()
            print(f"\n{self._LINE_PREFIX}[Error ({notification.error_kind.value}): {notification.message}]")
        elif isinstance(notification, Aborted):
            spinner.stop()
            print(f"\n{self._LINE_PREFIX}[Stopped after {len(notification.partial_text):,} chars]")

    async def _on_help(self) -> None:
        print(f"{self._LINE_PREFIX}Commands:")
        print(f"{self._LINE_PREFIX}- /checkpoints [limit]  list streams that never finished")
        print(f"{self._LINE_PREFIX}- /show <session_id>    print a stored checkpoint")
        print(f"{self._LINE_PREFIX}- Ctrl+C while streaming stops the current response")

    async def _on_checkpoints(self, command: str) -> None:
        if self._checkpoint_store is None:
            print(f"{self._LINE_PREFIX}Checkpointing is disabled.")
            return
        parts = command.split()
        limit = 20
        if len(parts) > 1:
            try:
                limit = int(parts[1])
            except ValueError:
                print(f"{self._LINE_PREFIX}Usage: /checkpoints [limit]")
                return
        records = self._checkpoint_store.list_interrupted(limit=limit)
        if not records:
            print(f"{self._LINE_PREFIX}No interrupted streams.")
            return
        print(f"{self._LINE_PREFIX}Interrupted streams:")
        for record in records:
            print(self._report.format_list_entry(record))

    async def _on_show(self, command: str) -> None:
        if self._checkpoint_store is None:
            print(f"{self._LINE_PREFIX}Checkpointing is disabled.")
            return
        parts = command.split()
        if len(parts) != 2:
            print(f"{self._LINE_PREFIX}Usage: /show <session_id>")
            return
        record = self._checkpoint_store.get(parts[1])
        if record is None:
            print(f"{self._LINE_PREFIX}No checkpoint for {parts[1]}")
            return
        for line in self._report.format_detail_lines(record):
            print(line)

    def _on_unknown(self, command: str) -> None:
        print(f"{self._LINE_PREFIX}Unknown command: {command} (try /help)")
