import unittest
from unittest.mock import patch

from chat_stream import logging_config
from chat_stream.logging_config import NO_SESSION, session_logger, setup_logging


class SetupLoggingTests(unittest.TestCase):
    def test_registers_configured_consumers(self) -> None:
        with patch.object(logging_config.logger, "add") as add, patch.object(logging_config.logger, "remove"):
            descriptions = setup_logging(
                level="DEBUG",
                consumers=[
                    {"type": "console", "level": "ERROR"},
                    {"type": "file", "path": ".test-artifacts/logs/out.log"},
                    {"type": "file", "path": ".test-artifacts/logs/out.jsonl", "serialize": True},
                ],
            )
        self.assertEqual(
            [
                "console (stderr, ERROR)",
                "file (.test-artifacts/logs/out.log, DEBUG)",
                "jsonl (.test-artifacts/logs/out.jsonl, DEBUG)",
            ],
            descriptions,
        )
        self.assertEqual(3, add.call_count)
        self.assertTrue(add.call_args.kwargs["serialize"])

    def test_unknown_consumer_is_skipped(self) -> None:
        with patch.object(logging_config.logger, "add") as add, patch.object(logging_config.logger, "remove"):
            descriptions = setup_logging(consumers=[{"type": "syslog"}])
        self.assertEqual([], descriptions)
        add.assert_not_called()


class SessionLoggerTests(unittest.TestCase):
    def tearDown(self) -> None:
        logging_config.logger.remove()

    def test_records_carry_session_id(self) -> None:
        setup_logging(consumers=[])
        lines: list[str] = []
        logging_config.logger.add(lambda m: lines.append(m.rstrip("\n")), format="{extra[session_id]} {message}")

        session_logger("s-42").info("tagged")
        logging_config.logger.info("untagged")

        self.assertEqual(["s-42 tagged", f"{NO_SESSION} untagged"], lines)


if __name__ == "__main__":
    unittest.main()
