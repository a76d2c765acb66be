"""Minimal terminal chat against a running gateway (python -m chat_gateway)."""

import asyncio
import sys

from chat_gateway.client import GatewayClient


async def main(base_url: str) -> None:
    client = GatewayClient(base_url)
    history = []
    while True:
        try:
            text = input("You: ").strip()
        except EOFError:
            break
        if text.lower() in {"exit", "quit", "bye"}:
            break
        if not text:
            continue
        history.append({"role": "user", "content": text})
        print("AI: ", end="", flush=True)
        reply = await client.send(history, on_delta=lambda d: print(d, end="", flush=True))
        print()
        if reply.error:
            print(f"[error] {reply.error}")
            history.pop()
            continue
        history.append({"role": "assistant", "content": reply.content})


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8787"))
