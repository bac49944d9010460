import asyncio
import unittest

from chat_stream.commands.router import CommandRouter


class CommandRouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.calls: list[tuple[str, str]] = []

        async def on_help() -> None:
            self.calls.append(("help", ""))

        async def on_checkpoints(command: str) -> None:
            self.calls.append(("checkpoints", command))

        async def on_show(command: str) -> None:
            self.calls.append(("show", command))

        self._router = CommandRouter(
            on_help=on_help,
            on_checkpoints=on_checkpoints,
            on_show=on_show,
            on_unknown=lambda command: self.calls.append(("unknown", command)),
        )

    def _route(self, message: str) -> bool:
        return asyncio.run(self._router.try_handle(message))

    def test_plain_messages_are_not_commands(self) -> None:
        self.assertFalse(self._route("hello /help"))
        self.assertEqual([], self.calls)

    def test_commands_are_dispatched(self) -> None:
        self.assertTrue(self._route(" /help "))
        self.assertTrue(self._route("/checkpoints 5"))
        self.assertTrue(self._route("/show abc"))
        self.assertTrue(self._route("/bogus"))
        self.assertEqual(
            [("help", ""), ("checkpoints", "/checkpoints 5"), ("show", "/show abc"), ("unknown", "/bogus")],
            self.calls,
        )


if __name__ == "__main__":
    unittest.main()
