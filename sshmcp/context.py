import threading
from typing import Any, Callable, Dict, Optional

from sshmcp.config import RuntimeOptions, ServerConfig, resolve_runtime_options
from sshmcp.errors import ElevationError
from sshmcp.profiles import ProfileStore
from sshmcp.prober import ConnectivityProber
from sshmcp.ssh import ConnectionManager, SSHConfig, build_ssh_config
from sshmcp.utils import append_description, log_error, sanitize_command


def wrap_sudo(command: str, sudo_password: Optional[str]) -> str:
    quoted = command.replace("'", "'\\''")
    if not sudo_password:
        return f"sudo -n sh -c '{quoted}'"
    escaped_pwd = sudo_password.replace("'", "'\\''")
    return f"printf '%s\\n' '{escaped_pwd}' | sudo -p \"\" -S sh -c '{quoted}'"


class GatewayContext:
    """Owns the profile store and at most one live connection manager.

    Operations that change the target call ``on_target_changed`` which tears
    the manager down; the next execution builds a fresh one from the active
    profile.
    """

    def __init__(
        self,
        store: ProfileStore,
        server_config: Optional[ServerConfig] = None,
        manager_factory: Callable[..., ConnectionManager] = ConnectionManager,
        prober: Optional[ConnectivityProber] = None,
    ):
        self.store = store
        self.server_config = server_config or ServerConfig()
        self.manager_factory = manager_factory
        self.prober = prober or ConnectivityProber()
        self.manager: Optional[ConnectionManager] = None
        self.lock = threading.Lock()

    def runtime_options(self) -> RuntimeOptions:
        return resolve_runtime_options(self.server_config, self.store.get_defaults())

    def build_ssh_config(self, profile_id: Optional[str] = None) -> SSHConfig:
        profile = self.store.get_profile(profile_id) if profile_id else self.store.get_active_profile()
        return build_ssh_config(profile, self.store.config_path)

    def get_connection_manager(self) -> ConnectionManager:
        with self.lock:
            if self.manager is None:
                self.manager = self.manager_factory(
                    self.build_ssh_config(), verify_host_key=self.server_config.SSH_VERIFY_HOST_KEY,
                )
            return self.manager

    def on_target_changed(self) -> None:
        with self.lock:
            manager = self.manager
            self.manager = None
        if manager is not None:
            manager.close()

    def close(self) -> None:
        self.on_target_changed()

    # ========= Execution =========
    def _prepared_manager(self) -> ConnectionManager:
        manager = self.get_connection_manager()
        manager.ensure_connected()
        if manager.get_su_password():
            try:
                manager.ensure_elevated()
            except ElevationError as exc:
                log_error(f"elevation unavailable, running unelevated: {exc}")
        return manager

    def execute(
        self,
        command: str,
        timeout_ms: Optional[int] = None,
        stdin: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        options = self.runtime_options()
        command = sanitize_command(command, options.max_chars)
        manager = self._prepared_manager()
        return manager.execute(append_description(command, description), timeout_ms or options.timeout_ms, stdin)

    def sudo_execute(self, command: str, timeout_ms: Optional[int] = None, description: Optional[str] = None) -> str:
        options = self.runtime_options()
        command = sanitize_command(command, options.max_chars)
        manager = self._prepared_manager()
        wrapped = wrap_sudo(append_description(command, description), manager.get_sudo_password())
        return manager.execute(wrapped, timeout_ms or options.timeout_ms)

    # ========= Profile operations =========
    def use_profile(self, profile_id: str, persist: bool = False) -> Dict[str, Any]:
        profile = self.store.set_active_profile(profile_id, persist=persist)
        self.on_target_changed()
        return {"activeProfile": self.store.get_active_profile_id(), "profile": profile}

    def reload_profiles(self) -> Dict[str, Any]:
        result = self.store.reload()
        self.on_target_changed()
        return result

    def create_profile(self, data: Dict[str, Any], activate: bool = False) -> Dict[str, Any]:
        profile = self.store.create_profile(data, activate=activate)
        if activate:
            self.on_target_changed()
        return {"activeProfile": self.store.get_active_profile_id(), "profile": profile}

    def prepare_delete_profile(self, profile_id: str, reason: str = "") -> Dict[str, Any]:
        return self.store.prepare_delete_profile(profile_id, reason=reason)

    def confirm_delete_profile(self, request_id: str, profile_id: str, confirmation_text: str) -> Dict[str, Any]:
        previous_active = self.store.get_active_profile_id()
        result = self.store.confirm_delete_profile(request_id, profile_id, confirmation_text)
        if previous_active == profile_id or result["activeProfile"] != previous_active:
            self.on_target_changed()
        return result

    def test_profile(
        self, profile_id: Optional[str] = None, timeout_ms: Optional[int] = None, retries: Optional[int] = None,
    ) -> Dict[str, Any]:
        ssh_config = self.build_ssh_config(profile_id)
        kwargs: Dict[str, Any] = {}
        if timeout_ms is not None:
            kwargs["timeout_ms"] = timeout_ms
        if retries is not None:
            kwargs["retries"] = retries
        report = self.prober.test_connection(ssh_config, **kwargs)
        return {"profileId": ssh_config.profile_id, "result": report.to_dict()}
