import os
import re
from dataclasses import dataclass
from typing import Any, Optional, Tuple

# ========= Static config =========
CONNECT_TIMEOUT = 30.0
CONNECT_RETRY_DELAYS: Tuple[float, ...] = (1.0, 3.0)
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
POLL_INTERVAL = 0.05

ELEVATION_TIMEOUT = 10.0
ELEVATION_COMMAND = "su -"
SHELL_TERM = "xterm"
SHELL_COLS = 80
SHELL_ROWS = 24

DEFAULT_TIMEOUT_MS = 60000
MAX_TIMEOUT_MS = 60 * 60 * 1000
DEFAULT_MAX_CHARS = 1000

KILL_COMMAND_TIMEOUT = 5.0

DEFAULT_PROBE_TIMEOUT_MS = 5000
DEFAULT_PROBE_RETRIES = 2
PROBE_BACKOFF_BASE = 0.5
PROBE_BACKOFF_CAP = 4.0

DELETE_REQUEST_TTL = 10 * 60
BACKUP_DIR_NAME = ".backups"
BACKUP_REASON_MAX = 40
NOTE_MAX_CHARS = 120
PASSWORD_MASK = "***"

# ========= Output patterns =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
ENV_PLACEHOLDER = re.compile(r"\$\{([A-Z0-9_]+)\}")
PASSWORD_PROMPT = re.compile(r"password[: ]", re.IGNORECASE)
ROOT_PROMPT = re.compile(r"#\s*$")
SU_FAILURE = re.compile(
    r"authentication failure|incorrect password|su: .*failed|su: failure",
    re.IGNORECASE,
)
AUTH_FAILURE = re.compile(
    r"authentication (failed|failure)|all configured authentication methods failed|permission denied",
    re.IGNORECASE,
)


@dataclass
class RuntimeOptions:
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_chars: Optional[int] = DEFAULT_MAX_CHARS  # None means unlimited
    disable_sudo: bool = False


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.CONFIG_PATH: Optional[str] = None
        self.PROFILE: Optional[str] = None
        self.TIMEOUT: Optional[str] = None
        self.MAX_CHARS: Optional[str] = None
        self.DISABLE_SUDO: Optional[bool] = None
        self.SSH_VERIFY_HOST_KEY: bool = False

    def load_from_env(self):
        self.CONFIG_PATH = os.environ.get("SSH_MCP_CONFIG", self.CONFIG_PATH)
        self.PROFILE = os.environ.get("SSH_MCP_PROFILE", self.PROFILE)
        self.TIMEOUT = os.environ.get("SSH_MCP_TIMEOUT", self.TIMEOUT)
        self.MAX_CHARS = os.environ.get("SSH_MCP_MAX_CHARS", self.MAX_CHARS)

        disable_sudo_env = os.environ.get("SSH_MCP_DISABLE_SUDO")
        if disable_sudo_env is not None:
            self.DISABLE_SUDO = disable_sudo_env.lower() in ("true", "1", "yes", "on")

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")


def parse_max_chars(value: Any, fallback: Optional[int] = DEFAULT_MAX_CHARS) -> Optional[int]:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        return int(value)
    text = str(value).strip().lower()
    if text == "none":
        return None
    try:
        parsed = int(text)
    except ValueError:
        return fallback
    if parsed <= 0:
        return None
    return parsed


def parse_positive_int(value: Any, fallback: int) -> int:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def resolve_runtime_options(server_config: ServerConfig, defaults: Any = None) -> RuntimeOptions:
    """CLI/env values win over the document's ``defaults`` block."""
    default_timeout = getattr(defaults, "timeout", None) or DEFAULT_TIMEOUT_MS
    timeout_ms = parse_positive_int(server_config.TIMEOUT, default_timeout)

    max_chars_source = server_config.MAX_CHARS
    if max_chars_source is None:
        max_chars_source = getattr(defaults, "max_chars", None)
    max_chars = parse_max_chars(max_chars_source, DEFAULT_MAX_CHARS)

    if server_config.DISABLE_SUDO is not None:
        disable_sudo = server_config.DISABLE_SUDO
    else:
        disable_sudo = bool(getattr(defaults, "disable_sudo", None) or False)

    return RuntimeOptions(timeout_ms=timeout_ms, max_chars=max_chars, disable_sudo=disable_sudo)


# Global instance
config = ServerConfig()
