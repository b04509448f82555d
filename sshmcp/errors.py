from typing import Optional


class GatewayError(Exception):
    """Base error. Carries the logical target and the failing operation."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        profile_id: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.profile_id = profile_id
        self.host = host
        self.port = port

    def target(self) -> str:
        parts = []
        if self.profile_id:
            parts.append(f'profile "{self.profile_id}"')
        if self.host:
            parts.append(f"{self.host}:{self.port}" if self.port else self.host)
        return " ".join(parts)

    def __str__(self) -> str:
        prefix = self.operation or ""
        target = self.target()
        if target:
            prefix = f"{prefix} [{target}]" if prefix else f"[{target}]"
        if prefix:
            return f"{prefix}: {self.message}"
        return self.message


# ========= Config document =========
class ConfigFormatError(GatewayError):
    pass


class UnsupportedFormatError(ConfigFormatError):
    pass


class MalformedDocumentError(ConfigFormatError):
    pass


class ValidationError(GatewayError):
    pass


class MissingEnvVarError(ValidationError):
    def __init__(self, name: str, **kwargs):
        super().__init__(f"Missing required environment variable: {name}", **kwargs)
        self.name = name


class ActiveProfileNotFoundError(ValidationError):
    pass


class KeyPathNotFoundError(ValidationError):
    pass


# ========= Session =========
class SSHConnectionError(GatewayError):
    def __init__(self, message: str, attempts: int = 0, retryable: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.retryable = retryable


class ElevationError(GatewayError):
    pass


class ExecutionError(GatewayError):
    pass


class CommandTimeoutError(ExecutionError):
    pass


# ========= Profile store =========
class ProfileOperationError(GatewayError):
    pass


class UnresolvedActiveProfileError(ProfileOperationError):
    pass


class LastProfileError(ProfileOperationError):
    pass
