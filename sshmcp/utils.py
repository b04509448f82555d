import re
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from sshmcp.config import ANSI_ESCAPE
from sshmcp.errors import ValidationError


def log_error(message: str) -> None:
    print(f"[SSH-MCP] {message}", file=sys.stderr, flush=True)


def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    try:
        numeric = int(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric


def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def safe_name(text: str, max_len: int = 80) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    cleaned = re.sub(r"\.{2,}", ".", cleaned).strip(".")
    return cleaned[:max_len] if cleaned else "unnamed"


def strip_ansi(text: str) -> str:
    if not text:
        return ""
    return ANSI_ESCAPE.sub("", text)


def single_line(text: str) -> str:
    return " ".join((text or "").split())


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 3)].rstrip() + "..."


def sanitize_password(password: Optional[str]) -> Optional[str]:
    if not isinstance(password, str) or password == "":
        return None
    return password


def sanitize_command(command: Any, max_chars: Optional[int]) -> str:
    if not isinstance(command, str):
        raise ValidationError("Command must be a string", operation="exec")
    trimmed = command.strip()
    if not trimmed:
        raise ValidationError("Command cannot be empty", operation="exec")
    if max_chars is not None and len(trimmed) > max_chars:
        raise ValidationError(f"Command is too long (max {max_chars} characters)", operation="exec")
    return trimmed


def escape_single_quotes(text: str) -> str:
    """Escape for embedding inside a single-quoted shell string."""
    return text.replace("'", "'\"'\"'")


def append_description(command: str, description: Optional[str]) -> str:
    if not description:
        return command
    escaped = description.replace("#", "\\#")
    return f"{command} # {escaped}"
