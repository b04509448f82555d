import errno
import io
import re
import socket
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError

from sshmcp.config import (
    AUTH_FAILURE, BUFFER_SIZE, CONNECT_RETRY_DELAYS, CONNECT_TIMEOUT, DEFAULT_TIMEOUT_MS,
    ELEVATION_COMMAND, ELEVATION_TIMEOUT, KEEPALIVE_INTERVAL, KILL_COMMAND_TIMEOUT,
    PASSWORD_PROMPT, POLL_INTERVAL, ROOT_PROMPT, SHELL_COLS, SHELL_ROWS, SHELL_TERM, SU_FAILURE,
)
from sshmcp.errors import (
    CommandTimeoutError, ElevationError, ExecutionError, SSHConnectionError,
)
from sshmcp.loader import resolve_key_path
from sshmcp.schema import PasswordAuth, ProfileDefinition
from sshmcp.utils import escape_single_quotes, log_error, sanitize_password, strip_ansi

KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)

RETRYABLE_ERRNOS = {
    errno.ECONNREFUSED, errno.ECONNRESET, errno.ECONNABORTED, errno.EHOSTUNREACH,
    errno.ENETUNREACH, errno.ETIMEDOUT, errno.EPIPE,
}
RETRYABLE_TEXT = re.compile(
    r"refused|reset|unreachable|timed out|timeout|banner|handshake|negotiat|kex|eof",
    re.IGNORECASE,
)

ERROR_AUTH = "auth"
ERROR_RETRYABLE = "retryable"
ERROR_FATAL = "fatal"


@dataclass
class SSHConfig:
    host: str
    port: int
    username: str
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)
    su_password: Optional[str] = field(default=None, repr=False)
    sudo_password: Optional[str] = field(default=None, repr=False)
    profile_id: Optional[str] = None

    def error_context(self) -> Dict[str, Any]:
        return {"profile_id": self.profile_id, "host": self.host, "port": self.port}

    def target(self) -> str:
        label = f"{self.host}:{self.port}"
        return f"{self.profile_id} ({label})" if self.profile_id else label


def build_ssh_config(profile: ProfileDefinition, config_path: str) -> SSHConfig:
    ssh_config = SSHConfig(
        host=profile.host, port=profile.port, username=profile.user, profile_id=profile.id,
    )
    try:
        if isinstance(profile.auth, PasswordAuth):
            ssh_config.password = sanitize_password(profile.auth.password)
        else:
            key_path = resolve_key_path(profile.auth.key_path, config_path)
            with open(key_path, "r", encoding="utf-8") as handle:
                ssh_config.private_key = handle.read()
        ssh_config.su_password = sanitize_password(profile.su_password)
        ssh_config.sudo_password = sanitize_password(profile.sudo_password)
    except OSError as exc:
        raise SSHConnectionError(
            f"Failed to load SSH credentials: {exc}", operation="load credentials", **ssh_config.error_context()
        ) from exc
    return ssh_config


def load_private_key(text: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    last_error: Optional[Exception] = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text), password=passphrase)
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise paramiko.SSHException(f"unsupported private key: {last_error}")


def connect_kwargs(ssh_config: SSHConfig, timeout: float, pkey: Optional[paramiko.PKey] = None) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {
        "hostname": ssh_config.host,
        "port": ssh_config.port,
        "username": ssh_config.username,
        "timeout": timeout,
        "banner_timeout": timeout,
        "auth_timeout": timeout,
        "allow_agent": False,
        "look_for_keys": False,
    }
    if ssh_config.password:
        kwargs["password"] = ssh_config.password
    if pkey is not None:
        kwargs["pkey"] = pkey
    return kwargs


def configure_host_keys(client: paramiko.SSHClient, verify_host_key: bool) -> None:
    if verify_host_key:
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.RejectPolicy())
    else:
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())


def classify_connect_error(exc: BaseException) -> str:
    """Authentication failures are terminal, transport and handshake failures retryable."""
    if isinstance(exc, paramiko.AuthenticationException):
        return ERROR_AUTH
    text = str(exc)
    if AUTH_FAILURE.search(text):
        return ERROR_AUTH
    if isinstance(exc, (socket.timeout, TimeoutError, ConnectionError, NoValidConnectionsError, EOFError)):
        return ERROR_RETRYABLE
    if isinstance(exc, OSError) and exc.errno in RETRYABLE_ERRNOS:
        return ERROR_RETRYABLE
    if isinstance(exc, paramiko.SSHException):
        return ERROR_RETRYABLE
    if RETRYABLE_TEXT.search(text):
        return ERROR_RETRYABLE
    return ERROR_FATAL


def extract_shell_output(buffer: str) -> str:
    """Drop the echoed command (first line) and the new prompt (last line)."""
    text = strip_ansi(buffer).replace("\r\n", "\n").replace("\r", "\n")
    lines = text.split("\n")
    output = "\n".join(lines[1:-1])
    return output + ("\n" if output else "")


def _close_quietly(resource: Any, what: str) -> None:
    if resource is None:
        return
    try:
        resource.close()
    except Exception as exc:
        log_error(f"{what} close error: {exc}")


def run_exec_channel(
    client: paramiko.SSHClient,
    command: str,
    timeout_ms: int,
    stdin: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Run one command on a fresh exec channel. Any stderr output is a failure."""
    context = dict(context or {})
    context.setdefault("operation", "exec")
    deadline = clock() + timeout_ms / 1000.0

    transport = client.get_transport()
    if transport is None or not transport.is_active():
        raise ExecutionError("SSH connection not established", **context)
    try:
        channel = transport.open_session(timeout=timeout_ms / 1000.0)
        channel.exec_command(command)
    except (paramiko.SSHException, OSError) as exc:
        raise ExecutionError(f"SSH exec error: {exc}", **context) from exc

    stdout_chunks = []
    stderr_chunks = []
    try:
        if stdin:
            try:
                channel.sendall(stdin.encode("utf-8"))
            except (paramiko.SSHException, OSError) as exc:
                log_error(f"stdin write failed for {command!r}: {exc}")
        try:
            channel.shutdown_write()
        except (paramiko.SSHException, OSError) as exc:
            log_error(f"stdin close failed for {command!r}: {exc}")

        while True:
            progressed = False
            if channel.recv_ready():
                data = channel.recv(BUFFER_SIZE)
                if data:
                    stdout_chunks.append(data)
                    progressed = True
            if channel.recv_stderr_ready():
                data = channel.recv_stderr(BUFFER_SIZE)
                if data:
                    stderr_chunks.append(data)
                    progressed = True
            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                break
            if clock() >= deadline:
                raise CommandTimeoutError(f"Command execution timed out after {timeout_ms}ms", **context)
            if not progressed:
                sleep(POLL_INTERVAL)
        exit_code = channel.recv_exit_status()
    finally:
        _close_quietly(channel, "exec channel")

    stdout = b"".join(stdout_chunks).decode("utf-8", errors="replace")
    stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")
    if stderr:
        raise ExecutionError(f"Error (code {exit_code}):\n{stderr}", **context)
    return stdout


def kill_remote_command(
    client: paramiko.SSHClient,
    command: str,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    kill = f"timeout 3s pkill -f '{escape_single_quotes(command)}' 2>/dev/null || true"
    try:
        run_exec_channel(
            client, kill, int(KILL_COMMAND_TIMEOUT * 1000),
            context={"operation": "kill timed-out command"}, clock=clock, sleep=sleep,
        )
    except (ExecutionError, paramiko.SSHException, OSError) as exc:
        log_error(f"best-effort kill failed: {exc}")


def exec_ssh_command(
    ssh_config: SSHConfig,
    command: str,
    stdin: Optional[str] = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    verify_host_key: bool = False,
    client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Session-independent execution over a throwaway connection.

    On timeout a best-effort ``pkill`` is sent for the command before the
    connection is torn down, so the remote process is not left running.
    """
    context = ssh_config.error_context()
    client = client_factory()
    try:
        configure_host_keys(client, verify_host_key)
        pkey = load_private_key(ssh_config.private_key) if ssh_config.private_key else None
        try:
            client.connect(**connect_kwargs(ssh_config, CONNECT_TIMEOUT, pkey))
        except Exception as exc:
            kind = classify_connect_error(exc)
            raise SSHConnectionError(
                f"SSH connection error: {exc}", attempts=1, retryable=kind == ERROR_RETRYABLE,
                operation="exec", **context,
            ) from exc
        try:
            return run_exec_channel(
                client, command, timeout_ms, stdin,
                context=dict(context, operation="exec"), clock=clock, sleep=sleep,
            )
        except CommandTimeoutError:
            kill_remote_command(client, command, clock=clock, sleep=sleep)
            raise
    finally:
        _close_quietly(client, "ssh client")


class ElevationMatcher:
    """Incremental prompt matcher for the ``su -`` flow.

    Patterns are checked in a fixed order on every chunk: password prompt,
    then root prompt (only in output received after the secret was sent),
    then failure.
    """

    SEND_SECRET = "send_secret"
    ELEVATED = "elevated"
    FAILED = "failed"

    def __init__(self):
        self.buffer = ""
        self.secret_sent = False
        self.sent_at = 0

    def feed(self, chunk: str) -> Optional[str]:
        self.buffer += chunk
        if not self.secret_sent and PASSWORD_PROMPT.search(self.buffer):
            self.secret_sent = True
            self.sent_at = len(self.buffer)
            return self.SEND_SECRET
        if self.secret_sent and ROOT_PROMPT.search(strip_ansi(self.buffer[self.sent_at:])):
            return self.ELEVATED
        if SU_FAILURE.search(self.buffer):
            return self.FAILED
        return None


class ConnectionManager:
    """One live SSH session to one target, with optional ``su`` elevation.

    ``connect()`` and ``ensure_elevated()`` are deduplicated: concurrent
    callers wait on the same future and share its outcome. Commands must be
    serialized per manager; ``execute`` holds ``exec_lock`` for that.
    """

    def __init__(
        self,
        ssh_config: SSHConfig,
        retry_delays: Tuple[float, ...] = CONNECT_RETRY_DELAYS,
        connect_timeout: float = CONNECT_TIMEOUT,
        elevation_timeout: float = ELEVATION_TIMEOUT,
        verify_host_key: bool = False,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ssh_config = ssh_config
        self.retry_delays = tuple(retry_delays)
        self.connect_timeout = connect_timeout
        self.elevation_timeout = elevation_timeout
        self.verify_host_key = verify_host_key
        self.client_factory = client_factory
        self.clock = clock
        self.sleep = sleep

        self.client: Optional[paramiko.SSHClient] = None
        self.su_shell: Optional[paramiko.Channel] = None
        self.is_elevated = False

        self.lock = threading.Lock()
        self.exec_lock = threading.Lock()
        self._connect_future: Optional[Future] = None
        self._elevate_future: Optional[Future] = None

    # ========= In-flight deduplication =========
    def _shared_call(self, slot: str, work: Callable[[], None]) -> None:
        with self.lock:
            future = getattr(self, slot)
            owner = future is None
            if owner:
                future = Future()
                setattr(self, slot, future)
        if owner:
            try:
                work()
            except BaseException as exc:
                with self.lock:
                    setattr(self, slot, None)
                future.set_exception(exc)
            else:
                with self.lock:
                    setattr(self, slot, None)
                future.set_result(None)
        future.result()

    # ========= Connection =========
    def is_connected(self) -> bool:
        client = self.client
        if client is None:
            return False
        try:
            transport = client.get_transport()
            return bool(transport and transport.is_active())
        except Exception:
            return False

    def connect(self) -> None:
        if self.is_connected():
            return
        self._shared_call("_connect_future", self._connect_with_retry)

    def ensure_connected(self) -> None:
        if not self.is_connected():
            self.connect()

    def _connect_with_retry(self) -> None:
        # A previous owner may have connected between our check and taking the slot.
        if self.is_connected():
            return
        context = self.ssh_config.error_context()
        try:
            pkey = load_private_key(self.ssh_config.private_key) if self.ssh_config.private_key else None
        except paramiko.SSHException as exc:
            raise SSHConnectionError(f"cannot load private key: {exc}", operation="connect", **context) from exc

        # A stale client (remote side hung up) is dropped before reconnecting.
        self._drop_session()

        attempts = 1 + len(self.retry_delays)
        for attempt in range(1, attempts + 1):
            try:
                self._open_client(pkey)
                break
            except Exception as exc:
                kind = classify_connect_error(exc)
                log_error(f"connect attempt {attempt}/{attempts} to {self.ssh_config.target()} failed ({kind}): {exc}")
                if kind == ERROR_AUTH:
                    raise SSHConnectionError(
                        f"SSH authentication failed: {exc}", attempts=attempt, retryable=False,
                        operation="connect", **context,
                    ) from exc
                if kind != ERROR_RETRYABLE or attempt == attempts:
                    raise SSHConnectionError(
                        f"SSH connection failed after {attempt} attempt(s): {exc}",
                        attempts=attempt, retryable=kind == ERROR_RETRYABLE, operation="connect", **context,
                    ) from exc
                self.sleep(self.retry_delays[attempt - 1])

        log_error(f"connected to {self.ssh_config.target()}")
        if self.ssh_config.su_password:
            try:
                self.ensure_elevated()
            except ElevationError as exc:
                log_error(f"elevation skipped, continuing unelevated: {exc}")

    def _open_client(self, pkey: Optional[paramiko.PKey]) -> None:
        client = self.client_factory()
        try:
            configure_host_keys(client, self.verify_host_key)
            client.connect(**connect_kwargs(self.ssh_config, self.connect_timeout, pkey))
        except Exception:
            _close_quietly(client, "ssh client")
            raise
        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        with self.lock:
            self.client = client

    def get_connection(self) -> paramiko.SSHClient:
        if self.client is None:
            raise SSHConnectionError(
                "SSH connection not established", operation="connect", **self.ssh_config.error_context()
            )
        return self.client

    # ========= Elevation =========
    def get_su_password(self) -> Optional[str]:
        return self.ssh_config.su_password

    def get_sudo_password(self) -> Optional[str]:
        return self.ssh_config.sudo_password

    def set_sudo_password(self, password: Optional[str]) -> None:
        self.ssh_config.sudo_password = sanitize_password(password)

    def set_su_password(self, password: Optional[str]) -> None:
        self.ssh_config.su_password = sanitize_password(password)
        if not self.ssh_config.su_password:
            self._drop_elevation()
            return
        try:
            self.ensure_elevated()
        except ElevationError as exc:
            log_error(f"elevation skipped, continuing unelevated: {exc}")

    def ensure_elevated(self) -> None:
        if self.is_elevated and self.su_shell is not None:
            return
        if not self.ssh_config.su_password:
            return
        self._shared_call("_elevate_future", self._elevate)

    def _elevate(self) -> None:
        if self.is_elevated and self.su_shell is not None:
            return
        context = dict(self.ssh_config.error_context(), operation="elevate")
        client = self.client
        if client is None:
            raise ElevationError("SSH connection not established", **context)
        try:
            channel = client.invoke_shell(term=SHELL_TERM, width=SHELL_COLS, height=SHELL_ROWS)
        except (paramiko.SSHException, OSError) as exc:
            raise ElevationError(f"Failed to start interactive shell for su: {exc}", **context) from exc

        matcher = ElevationMatcher()
        deadline = self.clock() + self.elevation_timeout
        try:
            channel.send(ELEVATION_COMMAND + "\n")
            while True:
                if channel.recv_ready():
                    data = channel.recv(BUFFER_SIZE)
                    if not data:
                        raise ElevationError("su shell closed before elevation completed", **context)
                    action = matcher.feed(data.decode("utf-8", errors="replace"))
                    if action == ElevationMatcher.SEND_SECRET:
                        channel.send(self.ssh_config.su_password + "\n")
                    elif action == ElevationMatcher.ELEVATED:
                        with self.lock:
                            self.su_shell = channel
                            self.is_elevated = True
                        log_error(f"elevated shell ready on {self.ssh_config.target()}")
                        return
                    elif action == ElevationMatcher.FAILED:
                        raise ElevationError("su authentication failed", **context)
                    continue
                if channel.closed or channel.exit_status_ready():
                    raise ElevationError("su shell closed before elevation completed", **context)
                if self.clock() >= deadline:
                    raise ElevationError("su elevation timed out", **context)
                self.sleep(POLL_INTERVAL)
        except ElevationError:
            _close_quietly(channel, "su shell")
            raise
        except (paramiko.SSHException, OSError) as exc:
            _close_quietly(channel, "su shell")
            raise ElevationError(f"su shell error: {exc}", **context) from exc

    def _drop_elevation(self) -> None:
        with self.lock:
            shell = self.su_shell
            self.su_shell = None
            self.is_elevated = False
        _close_quietly(shell, "su shell")

    # ========= Execution =========
    def execute(self, command: str, timeout_ms: Optional[int] = None, stdin: Optional[str] = None) -> str:
        timeout_ms = timeout_ms or DEFAULT_TIMEOUT_MS
        self.ensure_connected()
        with self.exec_lock:
            shell = self.su_shell
            if shell is not None and self.is_elevated:
                if stdin:
                    log_error("stdin is not forwarded on the elevated shell path")
                return self._execute_elevated(shell, command, timeout_ms)
            return run_exec_channel(
                self.get_connection(), command, timeout_ms, stdin,
                context=dict(self.ssh_config.error_context(), operation="exec"),
                clock=self.clock, sleep=self.sleep,
            )

    def _execute_elevated(self, shell: paramiko.Channel, command: str, timeout_ms: int) -> str:
        context = dict(self.ssh_config.error_context(), operation="exec (elevated)")
        deadline = self.clock() + timeout_ms / 1000.0
        try:
            while shell.recv_ready():
                shell.recv(BUFFER_SIZE)
            shell.send(command + "\n")
            buffer = ""
            while True:
                if shell.recv_ready():
                    data = shell.recv(BUFFER_SIZE)
                    if not data:
                        self._drop_elevation()
                        raise ExecutionError("elevated shell closed during command", **context)
                    buffer += data.decode("utf-8", errors="replace")
                    if ROOT_PROMPT.search(strip_ansi(buffer)):
                        return extract_shell_output(buffer)
                    continue
                if shell.closed:
                    self._drop_elevation()
                    raise ExecutionError("elevated shell closed during command", **context)
                if self.clock() >= deadline:
                    shell.send("\x03")
                    raise CommandTimeoutError(f"Command execution timed out after {timeout_ms}ms", **context)
                self.sleep(POLL_INTERVAL)
        except (paramiko.SSHException, OSError) as exc:
            self._drop_elevation()
            raise ExecutionError(f"elevated shell error: {exc}", **context) from exc

    # ========= Teardown =========
    def _drop_session(self) -> None:
        with self.lock:
            shell, client = self.su_shell, self.client
            self.su_shell = None
            self.is_elevated = False
            self.client = None
        _close_quietly(shell, "su shell")
        _close_quietly(client, "ssh client")

    def close(self) -> None:
        if self.client is None and self.su_shell is None:
            return
        self._drop_session()
        log_error(f"connection to {self.ssh_config.target()} closed")
