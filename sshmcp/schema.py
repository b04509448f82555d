from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class PasswordAuth(_StrictModel):
    type: Literal["password"]
    password: str = Field(min_length=1)


class KeyAuth(_StrictModel):
    type: Literal["key"]
    key_path: str = Field(alias="keyPath", min_length=1)


ProfileAuth = Annotated[Union[PasswordAuth, KeyAuth], Field(discriminator="type")]


class ProfileDefaults(_StrictModel):
    timeout: Optional[int] = Field(default=None, gt=0)
    max_chars: Optional[Union[Literal["none"], int]] = Field(default=None, alias="maxChars")
    disable_sudo: Optional[bool] = Field(default=None, alias="disableSudo")


class ProfileDefinition(_StrictModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    host: str = Field(min_length=1)
    port: int = Field(default=22, ge=1, le=65535)
    user: str = Field(min_length=1)
    auth: ProfileAuth
    su_password: Optional[str] = Field(default=None, alias="suPassword", min_length=1)
    sudo_password: Optional[str] = Field(default=None, alias="sudoPassword", min_length=1)
    note: str = ""
    tags: List[str] = Field(default_factory=list)


class ProfilesConfig(_StrictModel):
    version: Literal[1]
    active_profile: str = Field(alias="activeProfile", min_length=1)
    defaults: ProfileDefaults = Field(default_factory=ProfileDefaults)
    profiles: List[ProfileDefinition] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_ids(self) -> "ProfilesConfig":
        seen = set()
        for profile in self.profiles:
            if profile.id in seen:
                raise ValueError(f"duplicate profile id: {profile.id}")
            seen.add(profile.id)
        return self

    def find(self, profile_id: str) -> Optional[ProfileDefinition]:
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        return None


@dataclass
class LoadedConfig:
    """Validated projection paired with the raw (unexpanded) document it came from."""

    file_path: str
    format: str
    config: ProfilesConfig
    raw_config: Dict[str, Any]
