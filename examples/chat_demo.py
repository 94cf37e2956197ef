"""Minimal interactive chat session on top of chat_core."""

import asyncio
import sys

from chat_core import create_session


async def main() -> None:
    session = create_session()
    try:
        while True:
            text = (await asyncio.to_thread(input, "You: ")).strip()
            if text in {"/quit", "/exit"}:
                break
            if text == "/clear":
                session.clear_messages()
                continue
            if text == "/ping":
                print("reachable" if await session.ping() else "unreachable")
                continue
            if text == "/metrics":
                print(session.metrics())
                continue
            state = await session.send_message(text)
            if state.error:
                print("Error:", state.error, file=sys.stderr)
            elif state.messages and state.messages[-1].role == "assistant":
                print("Assistant:", state.messages[-1].content)
    finally:
        await session.aclose()


if __name__ == "__main__":
    asyncio.run(main())
