import json
from typing import Any, Dict, Optional

from sshmcp.config import MAX_TIMEOUT_MS
from sshmcp.context import GatewayContext
from sshmcp.errors import GatewayError, ValidationError
from sshmcp.utils import clamp_int, log_error, to_bool

SERVER_NAME = "sshmcp"
SERVER_VERSION = "2.0.0"

TOOL_NAMES = {
    "exec", "sudo-exec", "profiles-list", "profiles-use", "profiles-reload", "profiles-find",
    "profiles-note-update", "profiles-create", "profiles-delete-prepare", "profiles-delete-confirm",
    "profiles-test",
}


def format_tool_result(result: Any, is_error: bool = False) -> Dict[str, Any]:
    if isinstance(result, str):
        text = result
    else:
        text = json.dumps(result, ensure_ascii=False, indent=2) + "\n"
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}


def make_response(req_id: Any, result: Any, is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}


def tools_list(include_sudo: bool = True) -> Dict[str, Any]:
    timeout_param = {
        "type": "integer",
        "description": "Optional per-command timeout override in milliseconds.",
        "minimum": 1,
        "maximum": MAX_TIMEOUT_MS,
    }
    description_param = {"type": "string", "description": "Optional description of what this command will do."}
    profile_id_param = {"type": "string", "description": "Profile id."}
    tools = [
        {
            "name": "exec",
            "description": "Execute a shell command on the active SSH profile and return the output.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Shell command to execute on the remote SSH server."},
                    "description": description_param,
                    "timeoutMs": timeout_param,
                    "stdin": {"type": "string", "description": "Optional data written to the command's stdin."},
                },
                "required": ["command"],
            },
        },
        {
            "name": "profiles-list",
            "description": "List available SSH profiles with summary metadata. Secrets are masked.",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "profiles-use",
            "description": "Switch active SSH profile for subsequent command execution.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "profileId": profile_id_param,
                    "persist": {"type": "boolean", "description": "Also write activeProfile to the config file."},
                },
                "required": ["profileId"],
            },
        },
        {
            "name": "profiles-reload",
            "description": "Reload profile configuration from the local file and re-validate the active profile.",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "profiles-find",
            "description": "Search profiles by id, host, name, user, note and tags. Exact id matches rank first.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Case-insensitive search text. Empty returns all."},
                    "limit": {"type": "integer", "description": "Optional max number of results."},
                },
            },
        },
        {
            "name": "profiles-note-update",
            "description": "Update the note field for a profile and persist it to the local config file.",
            "inputSchema": {
                "type": "object",
                "properties": {"profileId": profile_id_param, "note": {"type": "string", "description": "New note text."}},
                "required": ["profileId", "note"],
            },
        },
        {
            "name": "profiles-create",
            "description": "Create a new profile. The whole document is validated before anything is written.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "name": {"type": "string"},
                    "host": {"type": "string"},
                    "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                    "user": {"type": "string"},
                    "auth": {
                        "type": "object",
                        "description": "{type: 'password', password} or {type: 'key', keyPath}.",
                    },
                    "suPassword": {"type": "string"},
                    "sudoPassword": {"type": "string"},
                    "note": {"type": "string"},
                    "tags": {"type": "array", "items": {"type": "string"}},
                    "contextSummary": {"type": "string", "description": "Used to derive a note when none is given."},
                    "activate": {"type": "boolean", "description": "Make the new profile active and persist it."},
                },
                "required": ["id", "host", "user", "auth"],
            },
        },
        {
            "name": "profiles-delete-prepare",
            "description": (
                "Step 1 of profile deletion: back up the config file and issue a request id "
                "valid for 10 minutes together with the exact confirmation text."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "profileId": profile_id_param,
                    "reason": {"type": "string", "description": "Short tag included in the backup file name."},
                },
                "required": ["profileId"],
            },
        },
        {
            "name": "profiles-delete-confirm",
            "description": "Step 2 of profile deletion. confirmationText must be exactly 'DELETE <profileId>'.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "requestId": {"type": "string"},
                    "profileId": profile_id_param,
                    "confirmationText": {"type": "string"},
                },
                "required": ["requestId", "profileId", "confirmationText"],
            },
        },
        {
            "name": "profiles-test",
            "description": "Test TCP, SSH handshake and authentication for a profile without touching the live session.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "profileId": {"type": "string", "description": "Profile id. Defaults to the active profile."},
                    "timeoutMs": {"type": "integer", "minimum": 1},
                    "retries": {"type": "integer", "minimum": 0, "maximum": 5},
                },
            },
        },
    ]
    if include_sudo:
        tools.insert(1, {
            "name": "sudo-exec",
            "description": (
                "Execute a shell command using sudo. Uses the profile's sudo password if provided, "
                "otherwise assumes passwordless sudo."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Shell command to execute with sudo."},
                    "description": description_param,
                    "timeoutMs": timeout_param,
                },
                "required": ["command"],
            },
        })
    return {"jsonrpc": "2.0", "id": 1, "result": {"tools": tools}}


def _require_str(args: Dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{key} is required", operation="tool arguments")
    return value


def _timeout_arg(args: Dict[str, Any]) -> Optional[int]:
    if args.get("timeoutMs") is None:
        return None
    return clamp_int(args.get("timeoutMs"), 0, 1, MAX_TIMEOUT_MS)


def call_tool(tool_name: str, args: Dict[str, Any], context: GatewayContext) -> Any:
    store = context.store
    if tool_name == "exec":
        return context.execute(
            args.get("command"), timeout_ms=_timeout_arg(args),
            stdin=args.get("stdin"), description=args.get("description"),
        )
    if tool_name == "sudo-exec":
        if context.runtime_options().disable_sudo:
            raise ValidationError("sudo-exec is disabled by configuration", operation="sudo-exec")
        return context.sudo_execute(
            args.get("command"), timeout_ms=_timeout_arg(args), description=args.get("description"),
        )
    if tool_name == "profiles-list":
        return {
            "configPath": store.config_path,
            "activeProfile": store.get_active_profile_id(),
            "profiles": store.list_profiles(),
        }
    if tool_name == "profiles-use":
        return context.use_profile(_require_str(args, "profileId"), persist=to_bool(args.get("persist", False)))
    if tool_name == "profiles-reload":
        return context.reload_profiles()
    if tool_name == "profiles-find":
        limit = args.get("limit")
        limit = clamp_int(limit, 0, 0, 10**6) if limit is not None else None
        query = args.get("query") or ""
        return {"query": query, "results": store.find_profiles(query, limit=limit)}
    if tool_name == "profiles-note-update":
        profile_id = _require_str(args, "profileId")
        note = args.get("note")
        if not isinstance(note, str):
            raise ValidationError("note must be a string", operation="tool arguments")
        return {"updatedProfileId": profile_id, "profile": store.update_note(profile_id, note)}
    if tool_name == "profiles-create":
        data = {key: value for key, value in args.items() if key != "activate"}
        return context.create_profile(data, activate=to_bool(args.get("activate", False)))
    if tool_name == "profiles-delete-prepare":
        return context.prepare_delete_profile(_require_str(args, "profileId"), reason=args.get("reason") or "")
    if tool_name == "profiles-delete-confirm":
        return context.confirm_delete_profile(
            _require_str(args, "requestId"), _require_str(args, "profileId"), args.get("confirmationText") or "",
        )
    if tool_name == "profiles-test":
        retries = args.get("retries")
        return context.test_profile(
            profile_id=args.get("profileId") or None,
            timeout_ms=_timeout_arg(args),
            retries=clamp_int(retries, 0, 0, 5) if retries is not None else None,
        )
    raise ValueError(f"Unknown tool: {tool_name}")


def handle_request(request: Dict[str, Any], context: GatewayContext) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            },
        }

    if isinstance(method, str) and method.startswith("notifications/"):
        return None
    if method == "tools/list":
        response = tools_list(include_sudo=not context.runtime_options().disable_sudo)
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        if tool_name not in TOOL_NAMES:
            return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown tool: {tool_name}"}}
        try:
            result = call_tool(tool_name, args, context)
        except GatewayError as exc:
            log_error(f"tool error ({tool_name}): {exc}")
            return make_response(req_id, str(exc), is_error=True)
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            return make_response(req_id, f"Unexpected error: {exc}", is_error=True)
        return make_response(req_id, result)

    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
