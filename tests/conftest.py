import os
import sys
import textwrap
import threading
from typing import Callable, Dict, List, Optional

import pytest

# Ensure project root is on sys.path
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from sshmcp.ssh import SSHConfig  # noqa: E402


TWO_PROFILES_YAML = """
version: 1
activeProfile: a
profiles:
  - id: a
    name: Alpha
    host: 10.0.0.1
    user: root
    auth:
      type: password
      password: "secret-a"
    note: "note-a"
    tags: [web]
  - id: b
    name: Beta
    host: 10.0.0.2
    port: 2222
    user: deploy
    auth:
      type: password
      password: "secret-b"
    note: "note-b"
    tags: [db]
"""


@pytest.fixture
def write_config(tmp_path):
    def _write(content: str, name: str = "profiles.yaml") -> str:
        path = tmp_path / name
        path.write_text(textwrap.dedent(content), encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def two_profiles(write_config):
    return write_config(TWO_PROFILES_YAML)


@pytest.fixture
def ssh_config():
    return SSHConfig(host="10.0.0.5", port=2222, username="ops", password="pw", profile_id="box")


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class FakeExecChannel:
    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", exit_code: int = 0, hang: bool = False):
        self._stdout = [stdout] if stdout else []
        self._stderr = [stderr] if stderr else []
        self.exit_code = exit_code
        self.hang = hang
        self.command: Optional[str] = None
        self.stdin = b""
        self.write_shut = False
        self.closed = False

    def exec_command(self, command: str) -> None:
        self.command = command

    def sendall(self, data: bytes) -> None:
        self.stdin += data

    def shutdown_write(self) -> None:
        self.write_shut = True

    def recv_ready(self) -> bool:
        return bool(self._stdout)

    def recv(self, size: int) -> bytes:
        return self._stdout.pop(0)

    def recv_stderr_ready(self) -> bool:
        return bool(self._stderr)

    def recv_stderr(self, size: int) -> bytes:
        return self._stderr.pop(0)

    def exit_status_ready(self) -> bool:
        return not self.hang

    def recv_exit_status(self) -> int:
        return self.exit_code

    def close(self) -> None:
        self.closed = True


class FakeShellChannel:
    """Interactive pty channel; ``responder`` maps each sent text to output chunks."""

    def __init__(self, responder: Callable[[str], List[str]]):
        self.responder = responder
        self.queue: List[bytes] = []
        self.sent: List[str] = []
        self.closed = False

    def send(self, data: str) -> int:
        self.sent.append(data)
        for chunk in self.responder(data):
            self.queue.append(chunk.encode("utf-8"))
        return len(data)

    def recv_ready(self) -> bool:
        return bool(self.queue)

    def recv(self, size: int) -> bytes:
        return self.queue.pop(0)

    def exit_status_ready(self) -> bool:
        return False

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    def __init__(self, channels: Optional[List[FakeExecChannel]] = None):
        self.active = True
        self.channels = list(channels or [])
        self.opened: List[FakeExecChannel] = []
        self.keepalive = None

    def is_active(self) -> bool:
        return self.active

    def set_keepalive(self, interval: int) -> None:
        self.keepalive = interval

    def open_session(self, timeout=None) -> FakeExecChannel:
        channel = self.channels.pop(0)
        self.opened.append(channel)
        return channel


class FakeClient:
    def __init__(
        self,
        connect_error: Optional[BaseException] = None,
        transport: Optional[FakeTransport] = None,
        shell: Optional[FakeShellChannel] = None,
        gate: Optional[threading.Event] = None,
    ):
        self.connect_error = connect_error
        self.transport = transport or FakeTransport()
        self.shell = shell
        self.gate = gate
        self.connect_started = threading.Event()
        self.connect_kwargs: Dict = {}
        self.connected = False
        self.closed = False
        self.policy = None

    def set_missing_host_key_policy(self, policy) -> None:
        self.policy = policy

    def load_system_host_keys(self) -> None:
        pass

    def connect(self, **kwargs) -> None:
        self.connect_kwargs = kwargs
        self.connect_started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def get_transport(self):
        return self.transport if self.connected else None

    def invoke_shell(self, term="vt100", width=80, height=24):
        if self.shell is None:
            raise OSError("shell unavailable")
        return self.shell

    def close(self) -> None:
        self.closed = True
        self.transport.active = False


class ClientFactory:
    def __init__(self, clients: List[FakeClient]):
        self.clients = list(clients)
        self.created: List[FakeClient] = []

    def __call__(self) -> FakeClient:
        client = self.clients.pop(0)
        self.created.append(client)
        return client


def su_responder(password: str = "rootpw", fail: bool = False, silent: bool = False):
    def respond(data: str) -> List[str]:
        if silent:
            return []
        if data == "su -\n":
            return ["su -\r\n", "Password: "]
        if data == password + "\n":
            if fail:
                return ["\r\nsu: Authentication failure\r\n$ "]
            return ["\r\n", "root@box:~# "]
        command = data.rstrip("\n")
        if command == "whoami":
            return ["whoami\r\nroot\r\n", "root@box:~# "]
        if command == "ls /etc/ssh":
            return ["ls /etc/ssh\r\nsshd_config\r\nssh_config\r\n", "root@box:~# "]
        return []

    return respond
