import argparse
import io
import json
import sys
from typing import List, Optional

from sshmcp.config import config
from sshmcp.context import GatewayContext
from sshmcp.errors import GatewayError
from sshmcp.profiles import ProfileStore
from sshmcp.server import handle_request
from sshmcp.utils import log_error


def _write_response(stdout: io.TextIOBase, response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    try:
        stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        stdout.flush()
    except (OSError, UnicodeError) as exc:
        log_error(f"response write error: {exc}")
        # Fallback: escape all non-ASCII to guarantee safe output
        stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
        stdout.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SSH MCP server driven by a profiles file (YAML/JSON)"
    )
    parser.add_argument("--config", help="Path to profiles file (overrides SSH_MCP_CONFIG env)")
    parser.add_argument("--profile", help="Profile id to activate at startup (overrides SSH_MCP_PROFILE env)")
    parser.add_argument("--timeout", help="Default command timeout in ms (overrides profile defaults)")
    parser.add_argument("--max-chars", dest="max_chars", help="Max command length, or 'none'")
    parser.add_argument("--disable-sudo", action="store_true", help="Do not expose the sudo-exec tool")
    parser.add_argument("--verify-host", action="store_true", help="Verify SSH host keys against known_hosts")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    return parser


def apply_args(args: argparse.Namespace) -> None:
    if args.config: config.CONFIG_PATH = args.config
    if args.profile: config.PROFILE = args.profile
    if args.timeout: config.TIMEOUT = args.timeout
    if args.max_chars: config.MAX_CHARS = args.max_chars
    if args.disable_sudo: config.DISABLE_SUDO = True

    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False
    elif args.verify_host:
        config.SSH_VERIFY_HOST_KEY = True


def serve(context: GatewayContext, stdin: io.TextIOBase, stdout: io.TextIOBase) -> None:
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
            continue
        try:
            response = handle_request(request, context)
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            # Send an error response back so the client doesn't hang
            response = {
                "jsonrpc": "2.0",
                "id": request.get("id") if isinstance(request, dict) else None,
                "error": {"code": -32603, "message": f"Internal error: {exc}"},
            }
        if response is not None:
            _write_response(stdout, response)


def main(argv: Optional[List[str]] = None) -> None:
    # Pre-load from environment
    config.load_from_env()

    parser = build_parser()
    args = parser.parse_args(argv)
    apply_args(args)

    if not config.CONFIG_PATH:
        parser.error("profiles file is required (via --config or SSH_MCP_CONFIG env)")

    store = ProfileStore(config.CONFIG_PATH, profile_override=config.PROFILE)
    try:
        store.initialize()
    except GatewayError as exc:
        log_error(f"startup failed: {exc}")
        sys.exit(1)

    context = GatewayContext(store, config)
    log_error(
        f"SSH MCP started. config={store.config_path} active={store.get_active_profile_id()} "
        f"verify_host={config.SSH_VERIFY_HOST_KEY}"
    )
    try:
        # Force UTF-8 I/O to avoid charmap encoding errors on Windows
        stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
        stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)
        serve(context, stdin, stdout)
    finally:
        log_error("shutting down...")
        context.close()


if __name__ == "__main__":
    main()
