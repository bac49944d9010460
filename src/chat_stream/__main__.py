import asyncio

from dotenv import load_dotenv
from loguru import logger

from chat_stream.app_config import load_json_config, parse_app_config, resolve_runtime_env
from chat_stream.bootstrap import bootstrap_runtime
from chat_stream.console import ChatConsole
from chat_stream.rate_limit import client_identifier


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env()
    runtime = await bootstrap_runtime(app, env)

    console = ChatConsole(
        engine=runtime.engine,
        admission_key=client_identifier({"X-User-Id": env.user_id or ""}),
        checkpoint_store=runtime.checkpoint_store,
    )

    print("chat-stream (type 'exit' to quit, '/help' for commands)")
    print(f"Backend: {runtime.client.stream_url}")
    if app.idle_timeout_seconds:
        print(f"Idle timeout: {app.idle_timeout_seconds:g}s")
    if runtime.checkpoint_store is not None:
        print(f"Checkpoints: {app.checkpoint_db_path}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue

            try:
                print()
                await console.handle(trimmed)
                print()
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        await runtime.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
