"""Profile store: active-profile resolution, CRUD, search and confirmed delete.

Every mutation edits a deep copy of the raw document, validates the copy,
writes it and only then adopts it. A failed validation leaves both the file
and the in-memory state as they were.
"""

import copy
import os
import shutil
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sshmcp.config import BACKUP_DIR_NAME, BACKUP_REASON_MAX, DELETE_REQUEST_TTL, NOTE_MAX_CHARS
from sshmcp.errors import (
    LastProfileError, MalformedDocumentError, ProfileOperationError, UnresolvedActiveProfileError,
    ValidationError,
)
from sshmcp.loader import load_profiles_config, profile_summary, save_raw_config, validate_raw_config
from sshmcp.schema import LoadedConfig, ProfileDefaults, ProfileDefinition
from sshmcp.utils import iso_now, log_error, safe_name, single_line, truncate

# Search weights, highest first.
SCORE_ID_EXACT = 100
SCORE_ID_PARTIAL = 60
SCORE_HOST_EXACT = 50
SCORE_HOST_PARTIAL = 40
SCORE_NAME = 30
SCORE_USER = 20
SCORE_NOTE = 10
SCORE_TAG = 5


@dataclass
class PendingDeleteRequest:
    request_id: str
    profile_id: str
    backup_path: str
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def confirmation_text(self) -> str:
        return f"DELETE {self.profile_id}"


def derive_note(data: Dict[str, Any]) -> str:
    parts = []
    summary = single_line(str(data.get("contextSummary") or ""))
    if summary:
        parts.append(summary)
    tags = [str(tag) for tag in (data.get("tags") or []) if str(tag).strip()]
    if tags:
        parts.append("tags: " + ", ".join(tags))
    parts.append(f"{data.get('name') or data.get('id')}({data.get('host')})")
    return truncate(single_line(" | ".join(parts)), NOTE_MAX_CHARS)


def score_profile(profile: ProfileDefinition, query: str) -> int:
    q = query.lower()
    pid = profile.id.lower()
    host = profile.host.lower()
    score = 0
    if pid == q:
        score += SCORE_ID_EXACT
    elif q in pid:
        score += SCORE_ID_PARTIAL
    if host == q:
        score += SCORE_HOST_EXACT
    elif q in host:
        score += SCORE_HOST_PARTIAL
    if q in profile.name.lower():
        score += SCORE_NAME
    if q in profile.user.lower():
        score += SCORE_USER
    if q in (profile.note or "").lower():
        score += SCORE_NOTE
    for tag in profile.tags or []:
        if q in tag.lower():
            score += SCORE_TAG
    return score


class ProfileStore:
    def __init__(
        self,
        config_path: str,
        profile_override: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config_path = os.path.abspath(config_path)
        self.profile_override = profile_override
        self.clock = clock
        self.loaded: Optional[LoadedConfig] = None
        self.active_profile_id: Optional[str] = None
        self.delete_requests: Dict[str, PendingDeleteRequest] = {}

    # ========= State =========
    def initialize(self, preferred: Optional[str] = None) -> None:
        loaded = load_profiles_config(self.config_path)
        active_id = self._pick_active_id(loaded, preferred)
        self.loaded = loaded
        self.active_profile_id = active_id
        log_error(f"profiles loaded from {self.config_path}: active={active_id} count={len(loaded.config.profiles)}")

    def _ensure_loaded(self) -> LoadedConfig:
        if self.loaded is None or self.active_profile_id is None:
            raise ProfileOperationError("profile store is not initialized", operation="profiles")
        return self.loaded

    def _pick_active_id(self, loaded: LoadedConfig, preferred: Optional[str] = None) -> str:
        for candidate in (preferred, self.profile_override, loaded.config.active_profile):
            if candidate and loaded.config.find(candidate) is not None:
                return candidate
        raise UnresolvedActiveProfileError(
            "Unable to resolve an active profile from configuration", operation="resolve active profile"
        )

    def _commit(self, raw_config: Dict[str, Any]) -> LoadedConfig:
        current = self._ensure_loaded()
        parsed = validate_raw_config(raw_config, current.file_path)
        candidate = LoadedConfig(
            file_path=current.file_path, format=current.format, config=parsed, raw_config=raw_config,
        )
        save_raw_config(candidate)
        self.loaded = candidate
        return candidate

    def _raw_copy(self) -> Dict[str, Any]:
        return copy.deepcopy(self._ensure_loaded().raw_config)

    def _raw_profiles(self, raw_config: Dict[str, Any]) -> List[Dict[str, Any]]:
        profiles = raw_config.get("profiles")
        if not isinstance(profiles, list):
            raise MalformedDocumentError("Invalid raw config: profiles is not an array", operation="profiles")
        return profiles

    def _raw_index(self, profile_id: str) -> int:
        # Validation keeps document order, so validated and raw entries share indexes.
        loaded = self._ensure_loaded()
        for index, profile in enumerate(loaded.config.profiles):
            if profile.id == profile_id:
                return index
        raise ProfileOperationError(f'Profile "{profile_id}" does not exist', operation="profiles")

    def reload(self) -> Dict[str, Any]:
        self.initialize(preferred=self.active_profile_id)
        loaded = self._ensure_loaded()
        return {
            "configPath": self.config_path,
            "activeProfile": self.active_profile_id,
            "profileCount": len(loaded.config.profiles),
            "profiles": self.list_profiles(),
        }

    # ========= Read accessors =========
    def get_active_profile_id(self) -> str:
        self._ensure_loaded()
        return self.active_profile_id

    def get_profile(self, profile_id: str) -> ProfileDefinition:
        profile = self._ensure_loaded().config.find(profile_id)
        if profile is None:
            raise ProfileOperationError(f'Profile "{profile_id}" does not exist', operation="get profile")
        return profile

    def get_active_profile(self) -> ProfileDefinition:
        return self.get_profile(self.get_active_profile_id())

    def get_defaults(self) -> ProfileDefaults:
        return self._ensure_loaded().config.defaults

    def list_profiles(self) -> List[Dict[str, Any]]:
        loaded = self._ensure_loaded()
        return [profile_summary(profile, self.active_profile_id) for profile in loaded.config.profiles]

    def find_profiles(self, query: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        loaded = self._ensure_loaded()
        query = (query or "").strip()
        scored = []
        for profile in loaded.config.profiles:
            score = score_profile(profile, query) if query else 0
            if query and score == 0:
                continue
            scored.append((score, profile))
        # Exact id matches always lead; sorted() is stable, ties keep document order.
        lowered = query.lower()
        scored = sorted(scored, key=lambda item: (item[1].id.lower() == lowered, item[0]), reverse=True)
        if limit is not None and limit > 0:
            scored = scored[:limit]
        results = []
        for score, profile in scored:
            item = profile_summary(profile, self.active_profile_id)
            item["score"] = score
            results.append(item)
        return results

    # ========= Mutations =========
    def set_active_profile(self, profile_id: str, persist: bool = False) -> Dict[str, Any]:
        profile = self.get_profile(profile_id)
        if not persist:
            self.active_profile_id = profile_id
            log_error(f"active profile switched to {profile_id} (runtime only)")
            return profile_summary(profile, profile_id)

        raw = self._raw_copy()
        raw["activeProfile"] = profile_id
        loaded = self._commit(raw)
        self.active_profile_id = self._pick_active_id(loaded, profile_id)
        log_error(f"active profile switched to {self.active_profile_id} (persisted)")
        return profile_summary(self.get_profile(self.active_profile_id), self.active_profile_id)

    def update_note(self, profile_id: str, note: str) -> Dict[str, Any]:
        index = self._raw_index(profile_id)
        raw = self._raw_copy()
        raw_profiles = self._raw_profiles(raw)
        raw_profiles[index]["note"] = note
        self._commit(raw)
        return profile_summary(self.get_profile(profile_id), self.active_profile_id)

    def create_profile(self, data: Dict[str, Any], activate: bool = False) -> Dict[str, Any]:
        loaded = self._ensure_loaded()
        profile_id = str(data.get("id") or "").strip()
        if not profile_id:
            raise ProfileOperationError("profile id is required", operation="create profile")
        if loaded.config.find(profile_id) is not None:
            raise ProfileOperationError(
                f'Profile "{profile_id}" already exists', operation="create profile", profile_id=profile_id,
            )

        entry: Dict[str, Any] = {
            "id": profile_id,
            "name": data.get("name") or profile_id,
            "host": data.get("host"),
        }
        if data.get("port") is not None:
            entry["port"] = data["port"]
        entry["user"] = data.get("user")
        auth = data.get("auth")
        if not isinstance(auth, dict):
            raise ValidationError(
                "auth must be an object with a type of 'password' or 'key'",
                operation="create profile", profile_id=profile_id,
            )
        entry["auth"] = dict(auth)
        for key in ("suPassword", "sudoPassword"):
            if data.get(key):
                entry[key] = data[key]
        note = data.get("note")
        entry["note"] = note if note is not None else derive_note(data)
        if data.get("tags"):
            entry["tags"] = [str(tag) for tag in data["tags"]]

        raw = self._raw_copy()
        self._raw_profiles(raw).append(entry)
        if activate:
            raw["activeProfile"] = profile_id
        committed = self._commit(raw)
        if activate:
            self.active_profile_id = self._pick_active_id(committed, profile_id)
        log_error(f"profile {profile_id} created (activate={activate})")
        return profile_summary(self.get_profile(profile_id), self.active_profile_id)

    # ========= Confirmed delete =========
    def _backup_dir(self) -> str:
        return os.path.join(os.path.dirname(self.config_path), BACKUP_DIR_NAME)

    def backup_config(self, reason: str) -> str:
        """Copy the on-disk document into the backup directory and return the copy's path."""
        backup_dir = self._backup_dir()
        os.makedirs(backup_dir, mode=0o700, exist_ok=True)
        os.chmod(backup_dir, 0o700)

        stem, ext = os.path.splitext(os.path.basename(self.config_path))
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        tag = safe_name(reason, max_len=BACKUP_REASON_MAX)
        backup_path = os.path.join(backup_dir, f"{safe_name(stem)}.{stamp}.{tag}.bak{ext}")

        real_dir = os.path.realpath(backup_dir)
        real_path = os.path.realpath(backup_path)
        if real_path == real_dir or os.path.commonpath([real_dir, real_path]) != real_dir:
            raise ProfileOperationError(
                f"backup path escapes backup directory: {backup_path}", operation="backup config",
            )

        shutil.copyfile(self.config_path, backup_path)
        os.chmod(backup_path, 0o600)
        log_error(f"config backup written to {backup_path}")
        return backup_path

    def _evict_expired(self) -> None:
        now = self.clock()
        for request_id in [rid for rid, req in self.delete_requests.items() if req.is_expired(now)]:
            del self.delete_requests[request_id]

    def pending_delete_requests(self) -> List[Dict[str, Any]]:
        self._evict_expired()
        return [
            {"requestId": req.request_id, "profileId": req.profile_id, "expiresAt": req.expires_at}
            for req in self.delete_requests.values()
        ]

    def prepare_delete_profile(self, profile_id: str, reason: str = "") -> Dict[str, Any]:
        loaded = self._ensure_loaded()
        self.get_profile(profile_id)
        if len(loaded.config.profiles) <= 1:
            raise LastProfileError(
                "Cannot delete the last remaining profile", operation="prepare delete", profile_id=profile_id,
            )

        backup_path = self.backup_config(reason or f"delete-{profile_id}")
        now = self.clock()
        request = PendingDeleteRequest(
            request_id=uuid.uuid4().hex,
            profile_id=profile_id,
            backup_path=backup_path,
            created_at=now,
            expires_at=now + DELETE_REQUEST_TTL,
        )
        self._evict_expired()
        self.delete_requests[request.request_id] = request
        return {
            "requestId": request.request_id,
            "profileId": profile_id,
            "backupPath": backup_path,
            "expiresAt": datetime.fromtimestamp(request.expires_at, timezone.utc).isoformat(timespec="seconds"),
            "confirmationText": request.confirmation_text(),
        }

    def confirm_delete_profile(self, request_id: str, profile_id: str, confirmation_text: str) -> Dict[str, Any]:
        self._evict_expired()
        request = self.delete_requests.get(request_id)
        if request is None:
            raise ProfileOperationError(
                f"Delete request {request_id} is unknown or expired", operation="confirm delete", profile_id=profile_id,
            )
        if request.profile_id != profile_id:
            raise ProfileOperationError(
                f'Delete request {request_id} was issued for profile "{request.profile_id}"',
                operation="confirm delete", profile_id=profile_id,
            )
        if confirmation_text != request.confirmation_text():
            raise ProfileOperationError(
                f'Confirmation text must be exactly "{request.confirmation_text()}"',
                operation="confirm delete", profile_id=profile_id,
            )

        loaded = self._ensure_loaded()
        index = self._raw_index(profile_id)
        remaining = [p.id for p in loaded.config.profiles if p.id != profile_id]
        if not remaining:
            raise LastProfileError(
                "Cannot delete the last remaining profile", operation="confirm delete", profile_id=profile_id,
            )

        raw = self._raw_copy()
        del self._raw_profiles(raw)[index]

        persisted_active = loaded.config.active_profile
        if persisted_active not in remaining:
            persisted_active = remaining[0]
            raw["activeProfile"] = persisted_active
        runtime_active = self.active_profile_id if self.active_profile_id in remaining else remaining[0]

        committed = self._commit(raw)
        self.active_profile_id = self._pick_active_id(committed, runtime_active)
        del self.delete_requests[request_id]
        log_error(f"profile {profile_id} deleted at {iso_now()}; active={self.active_profile_id}")
        return {
            "deletedProfileId": profile_id,
            "activeProfile": self.active_profile_id,
            "persistedActiveProfile": committed.config.active_profile,
            "backupPath": request.backup_path,
            "profiles": self.list_profiles(),
        }
