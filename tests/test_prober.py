import paramiko

from sshmcp.prober import ConnectivityProber, backoff_delay


class FakeSocket:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakeProbeTransport:
    remote_version = "SSH-2.0-OpenSSH_9.6"

    def __init__(self, start_error=None, auth_error=None):
        self.start_error = start_error
        self.auth_error = auth_error
        self.authenticated = False
        self.closed = False

    def start_client(self, timeout=None):
        if self.start_error is not None:
            raise self.start_error

    def auth_password(self, username, password):
        if self.auth_error is not None:
            raise self.auth_error
        self.authenticated = True

    def is_authenticated(self):
        return self.authenticated

    def close(self):
        self.closed = True


def make_prober(clock, transports, socket_error=None):
    queue = list(transports)

    def socket_factory(address, timeout):
        if socket_error is not None:
            raise socket_error
        return FakeSocket()

    return ConnectivityProber(
        socket_factory=socket_factory,
        transport_factory=lambda sock: queue.pop(0),
        clock=clock,
        sleep=clock.sleep,
    )


def test_backoff_is_capped():
    assert [backoff_delay(n) for n in (1, 2, 3, 4, 5)] == [0.5, 1.0, 2.0, 4.0, 4.0]


def test_successful_probe(ssh_config, clock):
    transport = FakeProbeTransport()
    report = make_prober(clock, [transport]).test_connection(ssh_config)
    data = report.to_dict()
    assert data["ok"] is True
    assert data["attempts"] == 1
    assert data["serverBanner"] == "SSH-2.0-OpenSSH_9.6"
    assert data["profileId"] == "box"
    assert data["tcp"]["ok"] and data["handshake"]["ok"] and data["auth"]["ok"]
    assert transport.closed


def test_tcp_failure_skips_later_stages(ssh_config, clock):
    prober = make_prober(clock, [], socket_error=ConnectionRefusedError(111, "Connection refused"))
    data = prober.test_connection(ssh_config).to_dict()
    assert data["ok"] is False
    assert data["attempts"] == 0
    assert "refused" in data["tcp"]["error"]
    assert data["handshake"]["skipped"] is True
    assert data["auth"]["skipped"] is True


def test_auth_failure_is_not_retried(ssh_config, clock):
    transports = [FakeProbeTransport(auth_error=paramiko.AuthenticationException("Authentication failed."))]
    data = make_prober(clock, transports).test_connection(ssh_config, retries=3).to_dict()
    assert data["attempts"] == 1
    assert data["handshake"]["ok"] is True
    assert data["auth"]["ok"] is False
    assert clock.sleeps == []


def test_handshake_failure_retries_with_backoff(ssh_config, clock):
    banner_error = paramiko.SSHException("Error reading SSH protocol banner")
    transports = [
        FakeProbeTransport(start_error=banner_error),
        FakeProbeTransport(start_error=banner_error),
        FakeProbeTransport(),
    ]
    data = make_prober(clock, transports).test_connection(ssh_config, retries=2).to_dict()
    assert data["ok"] is True
    assert data["attempts"] == 3
    assert clock.sleeps == [0.5, 1.0]


def test_retries_exhausted(ssh_config, clock):
    banner_error = paramiko.SSHException("Error reading SSH protocol banner")
    transports = [FakeProbeTransport(start_error=banner_error) for _ in range(2)]
    data = make_prober(clock, transports).test_connection(ssh_config, retries=1).to_dict()
    assert data["ok"] is False
    assert data["attempts"] == 2
    assert "banner" in data["handshake"]["error"]
    assert data["auth"]["skipped"] is True
