"""Profile document loading, validation and persistence.

The raw document (as parsed, before ``${VAR}`` expansion) is the source of
truth for persistence. Validation always runs on a deep copy that has been
expanded against the *current* process environment, so external env changes
are picked up on every reload.
"""

import copy
import json
import os
import tempfile
from typing import Any, Dict

import yaml
from pydantic import ValidationError as PydanticValidationError

from sshmcp.config import ENV_PLACEHOLDER, PASSWORD_MASK
from sshmcp.errors import (
    ActiveProfileNotFoundError, ConfigFormatError, KeyPathNotFoundError, MalformedDocumentError,
    MissingEnvVarError, UnsupportedFormatError, ValidationError,
)
from sshmcp.schema import KeyAuth, LoadedConfig, PasswordAuth, ProfileDefinition, ProfilesConfig

FORMATS = {".yaml": "yaml", ".yml": "yaml", ".json": "json"}


def infer_format(file_path: str) -> str:
    ext = os.path.splitext(file_path)[1].lower()
    fmt = FORMATS.get(ext)
    if fmt is None:
        raise UnsupportedFormatError(
            f"Unsupported config file extension: {ext or '<none>'}. Use .yaml/.yml/.json",
            operation="load config",
        )
    return fmt


def _expand_env_string(value: str) -> str:
    def replace(match):
        name = match.group(1)
        env_value = os.environ.get(name)
        if env_value is None:
            raise MissingEnvVarError(name, operation="validate config")
        return env_value

    return ENV_PLACEHOLDER.sub(replace, value)


def expand_env(value: Any) -> Any:
    if isinstance(value, str):
        return _expand_env_string(value)
    if isinstance(value, list):
        return [expand_env(item) for item in value]
    if isinstance(value, dict):
        return {key: expand_env(item) for key, item in value.items()}
    return value


def resolve_key_path(key_path: str, config_path: str) -> str:
    expanded = os.path.expanduser(key_path)
    if os.path.isabs(expanded):
        return expanded
    base_dir = os.path.dirname(os.path.abspath(config_path))
    return os.path.normpath(os.path.join(base_dir, expanded))


def _format_schema_errors(exc: PydanticValidationError) -> str:
    lines = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "<root>"
        lines.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "; ".join(lines)


def _validate_auth_fields(config: ProfilesConfig, file_path: str) -> None:
    for profile in config.profiles:
        auth = profile.auth
        if isinstance(auth, PasswordAuth) and not auth.password.strip():
            raise ValidationError(
                "profile requires auth.password",
                operation="validate config", profile_id=profile.id, host=profile.host, port=profile.port,
            )
        if isinstance(auth, KeyAuth):
            if not auth.key_path.strip():
                raise ValidationError(
                    "profile requires auth.keyPath",
                    operation="validate config", profile_id=profile.id, host=profile.host, port=profile.port,
                )
            resolved = resolve_key_path(auth.key_path, file_path)
            if not os.path.isfile(resolved):
                raise KeyPathNotFoundError(
                    f"keyPath does not exist: {resolved}",
                    operation="validate config", profile_id=profile.id, host=profile.host, port=profile.port,
                )


def validate_raw_config(raw_config: Dict[str, Any], file_path: str) -> ProfilesConfig:
    expanded = expand_env(copy.deepcopy(raw_config))
    try:
        parsed = ProfilesConfig.model_validate(expanded)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"invalid profiles document: {_format_schema_errors(exc)}", operation="validate config"
        ) from exc
    if parsed.find(parsed.active_profile) is None:
        raise ActiveProfileNotFoundError(
            f'activeProfile "{parsed.active_profile}" does not exist in profiles', operation="validate config"
        )
    _validate_auth_fields(parsed, file_path)
    return parsed


def parse_raw_content(content: str, fmt: str) -> Dict[str, Any]:
    try:
        if fmt == "json":
            parsed = json.loads(content)
        else:
            parsed = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise MalformedDocumentError(f"cannot parse {fmt} document: {exc}", operation="load config") from exc
    if not isinstance(parsed, dict):
        raise MalformedDocumentError("Config root must be an object", operation="load config")
    return parsed


def load_profiles_config(file_path: str) -> LoadedConfig:
    fmt = infer_format(file_path)
    try:
        with open(file_path, "r", encoding="utf-8") as handle:
            content = handle.read()
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigFormatError(f"cannot read config file {file_path}: {exc}", operation="load config") from exc
    raw_config = parse_raw_content(content, fmt)
    parsed = validate_raw_config(raw_config, file_path)
    return LoadedConfig(file_path=file_path, format=fmt, config=parsed, raw_config=raw_config)


def serialize_raw_config(raw_config: Dict[str, Any], fmt: str) -> str:
    if fmt == "json":
        return json.dumps(raw_config, ensure_ascii=False, indent=2) + "\n"
    return yaml.safe_dump(raw_config, sort_keys=False, allow_unicode=True, default_flow_style=False)


def write_file_atomic(file_path: str, content: str) -> None:
    directory = os.path.dirname(os.path.abspath(file_path))
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        if os.path.exists(file_path):
            os.chmod(tmp_path, os.stat(file_path).st_mode & 0o777)
        os.replace(tmp_path, file_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def save_raw_config(loaded: LoadedConfig) -> None:
    write_file_atomic(loaded.file_path, serialize_raw_config(loaded.raw_config, loaded.format))


def profile_summary(profile: ProfileDefinition, active_profile_id: str) -> Dict[str, Any]:
    if isinstance(profile.auth, PasswordAuth):
        auth = {"type": "password", "password": PASSWORD_MASK}
    else:
        auth = {"type": "key", "keyPath": os.path.basename(profile.auth.key_path)}
    return {
        "id": profile.id,
        "name": profile.name,
        "host": profile.host,
        "port": profile.port,
        "user": profile.user,
        "note": profile.note or "",
        "tags": list(profile.tags or []),
        "auth": auth,
        "active": profile.id == active_profile_id,
    }
