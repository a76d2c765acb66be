"""测试用的假 Provider / 假存储。"""

import asyncio
from typing import Any, Dict, List, Sequence


class FakeProvider:
    """按脚本回放的 Provider。

    stream_scripts: 每次 complete_streaming 调用消费一个脚本；
        脚本元素为 str（产出增量）、float（等待秒数）或异常（抛出）。
    once_results: 每次 complete_once 调用消费一个结果；异常会被抛出。
    """

    name = "fake"

    def __init__(self, stream_scripts=None, once_results=None):
        self.stream_scripts: List[List[Any]] = list(stream_scripts or [])
        self.once_results: List[Any] = list(once_results or [])
        self.stream_calls = 0
        self.once_calls = 0
        self.requests: List[Any] = []
        self.closed = 0

    async def complete_once(self, req):
        self.once_calls += 1
        self.requests.append(req)
        result = self.once_results.pop(0)
        if isinstance(result, (int, float)) and not isinstance(result, bool):
            await asyncio.sleep(result)
            result = self.once_results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    async def complete_streaming(self, req):
        self.stream_calls += 1
        self.requests.append(req)
        script = self.stream_scripts.pop(0)
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                if isinstance(item, (int, float)):
                    await asyncio.sleep(item)
                    continue
                yield item
        finally:
            self.closed += 1


class FakeStore:
    name = "fake"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.appended: List[tuple] = []

    async def append_messages(self, conversation_id: str, messages: Sequence[Dict[str, str]]) -> int:
        if self.fail:
            raise RuntimeError("store down")
        self.appended.append((conversation_id, list(messages)))
        return len(messages)


def collect(agen) -> List[str]:
    async def _run():
        return [part async for part in agen]

    return asyncio.run(_run())
