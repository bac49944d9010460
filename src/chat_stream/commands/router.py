from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_checkpoints: Callable[[str], Awaitable[None]],
        on_show: Callable[[str], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_checkpoints = on_checkpoints
        self._on_show = on_show
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        if trimmed == "/help":
            await self._on_help()
            return True
        if trimmed.startswith("/checkpoints"):
            await self._on_checkpoints(trimmed)
            return True
        if trimmed.startswith("/show"):
            await self._on_show(trimmed)
            return True

        self._on_unknown(trimmed)
        return True
