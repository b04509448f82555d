"""Connectivity diagnostics that never touch the live session.

The probe runs in three stages: bare TCP, SSH handshake (server banner and
key exchange) and authentication. Handshake and auth share a transient
paramiko ``Transport``; only handshake/network-class failures are retried.
"""

import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

import paramiko

from sshmcp.config import (
    DEFAULT_PROBE_RETRIES, DEFAULT_PROBE_TIMEOUT_MS, PROBE_BACKOFF_BASE, PROBE_BACKOFF_CAP,
)
from sshmcp.ssh import ERROR_RETRYABLE, SSHConfig, classify_connect_error, load_private_key
from sshmcp.utils import log_error


@dataclass
class ProbeStep:
    ok: bool = False
    duration_ms: int = 0
    error: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ok": self.ok, "durationMs": self.duration_ms}
        if self.error:
            data["error"] = self.error
        if self.skipped:
            data["skipped"] = True
        return data


@dataclass
class ProbeReport:
    host: str
    port: int
    profile_id: Optional[str] = None
    tcp: ProbeStep = field(default_factory=ProbeStep)
    handshake: ProbeStep = field(default_factory=ProbeStep)
    auth: ProbeStep = field(default_factory=ProbeStep)
    attempts: int = 0
    server_banner: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.tcp.ok and self.handshake.ok and self.auth.ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profileId": self.profile_id,
            "host": self.host,
            "port": self.port,
            "ok": self.ok,
            "attempts": self.attempts,
            "serverBanner": self.server_banner,
            "tcp": self.tcp.to_dict(),
            "handshake": self.handshake.to_dict(),
            "auth": self.auth.to_dict(),
        }


def backoff_delay(attempt: int) -> float:
    return min(PROBE_BACKOFF_BASE * (2 ** (attempt - 1)), PROBE_BACKOFF_CAP)


class ConnectivityProber:
    def __init__(
        self,
        socket_factory: Callable[..., Any] = socket.create_connection,
        transport_factory: Callable[[Any], paramiko.Transport] = paramiko.Transport,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.socket_factory = socket_factory
        self.transport_factory = transport_factory
        self.clock = clock
        self.sleep = sleep

    def _elapsed_ms(self, started: float) -> int:
        return int((self.clock() - started) * 1000)

    def test_connection(
        self,
        ssh_config: SSHConfig,
        timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
        retries: int = DEFAULT_PROBE_RETRIES,
    ) -> ProbeReport:
        timeout = timeout_ms / 1000.0
        report = ProbeReport(host=ssh_config.host, port=ssh_config.port, profile_id=ssh_config.profile_id)

        started = self.clock()
        try:
            sock = self.socket_factory((ssh_config.host, ssh_config.port), timeout)
            sock.close()
            report.tcp = ProbeStep(ok=True, duration_ms=self._elapsed_ms(started))
        except OSError as exc:
            report.tcp = ProbeStep(ok=False, duration_ms=self._elapsed_ms(started), error=str(exc) or type(exc).__name__)
            report.handshake = ProbeStep(skipped=True, error="skipped: tcp probe failed")
            report.auth = ProbeStep(skipped=True, error="skipped: tcp probe failed")
            return report

        attempt = 0
        while True:
            attempt += 1
            report.attempts = attempt
            handshake, auth, retryable, banner = self._probe_once(ssh_config, timeout)
            report.handshake, report.auth = handshake, auth
            if banner:
                report.server_banner = banner
            if auth.ok or not retryable or attempt > retries:
                break
            delay = backoff_delay(attempt)
            log_error(f"probe of {ssh_config.target()} attempt {attempt} failed, retrying in {delay:.1f}s")
            self.sleep(delay)
        return report

    def _probe_once(
        self, ssh_config: SSHConfig, timeout: float
    ) -> Tuple[ProbeStep, ProbeStep, bool, Optional[str]]:
        sock = None
        transport = None
        started = self.clock()
        try:
            try:
                sock = self.socket_factory((ssh_config.host, ssh_config.port), timeout)
                transport = self.transport_factory(sock)
                transport.banner_timeout = timeout
                transport.handshake_timeout = timeout
                transport.auth_timeout = timeout
                transport.start_client(timeout=timeout)
            except Exception as exc:
                handshake = ProbeStep(ok=False, duration_ms=self._elapsed_ms(started), error=str(exc) or type(exc).__name__)
                auth = ProbeStep(skipped=True, error="skipped: handshake failed")
                return handshake, auth, classify_connect_error(exc) == ERROR_RETRYABLE, None

            handshake = ProbeStep(ok=True, duration_ms=self._elapsed_ms(started))
            banner = getattr(transport, "remote_version", None)

            auth_started = self.clock()
            try:
                if ssh_config.private_key:
                    transport.auth_publickey(ssh_config.username, load_private_key(ssh_config.private_key))
                elif ssh_config.password:
                    transport.auth_password(ssh_config.username, ssh_config.password)
                else:
                    transport.auth_none(ssh_config.username)
                if not transport.is_authenticated():
                    raise paramiko.AuthenticationException("Authentication failed.")
            except Exception as exc:
                auth = ProbeStep(ok=False, duration_ms=self._elapsed_ms(auth_started), error=str(exc) or type(exc).__name__)
                return handshake, auth, classify_connect_error(exc) == ERROR_RETRYABLE, banner

            return handshake, ProbeStep(ok=True, duration_ms=self._elapsed_ms(auth_started)), False, banner
        finally:
            for resource in (transport, sock):
                if resource is not None:
                    try:
                        resource.close()
                    except Exception as exc:
                        log_error(f"probe cleanup error: {exc}")
