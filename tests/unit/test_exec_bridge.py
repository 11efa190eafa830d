import asyncio
from typing import List, Optional

from hydra_server.app.workspaces.streaming import bridge_exec


class _FakeSession:
    """
    Exec session double: replays scripted output, records input.
    """

    def __init__(self, output: List[bytes], hold_open: bool = False) -> None:
        self.exec_id = "exec-1"
        self.sent: List[bytes] = []
        self.closed = False
        self._output = list(output)
        self._hold_open = hold_open

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionError("exec session is closed")
        self.sent.append(data)

    async def recv(self, size: int = 4096) -> bytes:
        if self._output:
            return self._output.pop(0)
        if self._hold_open and not self.closed:
            await asyncio.sleep(3600)
        return b""

    async def close(self) -> None:
        self.closed = True


def _receiver(messages: List[Optional[bytes]], then_wait: bool = False):
    queue = list(messages)

    async def receive() -> Optional[bytes]:
        if queue:
            return queue.pop(0)
        if then_wait:
            await asyncio.sleep(3600)
        return None

    return receive


def test_output_is_forwarded_until_shell_exits():
    session = _FakeSession([b"$ ", b"hello\r\n"])
    received: List[bytes] = []

    async def send(data: bytes) -> None:
        received.append(data)

    asyncio.run(bridge_exec(session, _receiver([], then_wait=True), send))
    assert received == [b"$ ", b"hello\r\n"]
    assert session.closed


def test_input_is_forwarded_and_disconnect_closes_session():
    session = _FakeSession([], hold_open=True)

    async def send(data: bytes) -> None:
        pass

    asyncio.run(bridge_exec(session, _receiver([b"ls\n", b"", b"exit\n"]), send))
    assert session.sent == [b"ls\n", b"exit\n"]
    assert session.closed


def test_failed_send_ends_bridge_and_closes_session():
    session = _FakeSession([b"data"], hold_open=True)

    async def send(data: bytes) -> None:
        raise ConnectionError("caller went away")

    asyncio.run(bridge_exec(session, _receiver([], then_wait=True), send))
    assert session.closed
