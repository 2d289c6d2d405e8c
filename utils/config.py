from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)


class RconConfig(BaseModel):
    address: str = ""  # host:port
    password: str = ""
    timeout: int = 5


class RestConfig(BaseModel):
    address: str = ""  # http://host:8212
    username: str = "admin"
    password: str = ""
    timeout: int = 5


class SaveConfig(BaseModel):
    path: str = ""  # local path, http(s)://, k8s://ns/pod/container:/path, docker://name:/path
    decode_path: str = ""
    backup_keep_days: int = 0  # 0 -> fleet default


class ServerConfig(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    enabled: bool = True
    rcon: RconConfig = Field(default_factory=RconConfig)
    rest: RestConfig = Field(default_factory=RestConfig)
    save: SaveConfig = Field(default_factory=SaveConfig)

    @property
    def display_name(self) -> str:
        return self.name or self.id


class Settings(BaseSettings):
    # Fleet
    SERVERS: list[ServerConfig] = []

    # Legacy single-server settings, migrated into SERVERS as "default"
    RCON_ADDRESS: str = ""
    RCON_PASSWORD: str = ""
    REST_ADDRESS: str = ""
    REST_USERNAME: str = "admin"
    REST_PASSWORD: str = ""
    SAVE_PATH: str = ""
    SAVE_DECODE_PATH: str = ""

    # Tasks (seconds; 0 disables)
    TASK_SYNC_INTERVAL: int = 60
    SAVE_SYNC_INTERVAL: int = 600
    BACKUP_INTERVAL: int = 14400
    BACKUP_KEEP_DAYS: int = 7
    OVERLAP_POLICY: Literal["skip", "allow"] = "skip"
    SHUTDOWN_TIMEOUT: float = 30.0

    # Player logging / whitelist
    PLAYER_LOGGING: bool = False
    PLAYER_LOGIN_MESSAGE: str = "{username} joined {server_name}. Online: {online_num}"
    PLAYER_LOGOUT_MESSAGE: str = "{username} left {server_name}. Online: {online_num}"
    BROADCAST_LINE_DELAY: float = 1.0
    KICK_NON_WHITELIST: bool = False

    # Sources / backups
    BACKUP_DIR: str = "backups"
    SOURCE_TIMEOUT: float = 120.0
    CACHE_EVICT_INTERVAL: int = 300
    CACHE_KEEP: int = 5
    CACHE_MAX_AGE: int = 3600
    SAV_CLI_PATH: str = ""
    DECODE_TIMEOUT: float = 600.0

    # DB
    DB_URL: str = "sqlite+aiosqlite:///./fleet.db"

    # App
    APP_ENV: str = "dev"
    LOG_LEVEL: str = "INFO"
    API_TOKEN: str = ""
    PUBLIC_URL: str = "http://127.0.0.1:8080"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        yaml_file="config.yaml",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _migrate_legacy(self) -> "Settings":
        if not self.SERVERS and (self.RCON_ADDRESS or self.REST_ADDRESS):
            self.SERVERS = [
                ServerConfig(
                    id="default",
                    name="Default Server",
                    description="Migrated from legacy configuration",
                    rcon=RconConfig(address=self.RCON_ADDRESS, password=self.RCON_PASSWORD),
                    rest=RestConfig(
                        address=self.REST_ADDRESS,
                        username=self.REST_USERNAME,
                        password=self.REST_PASSWORD,
                    ),
                    save=SaveConfig(path=self.SAVE_PATH, decode_path=self.SAVE_DECODE_PATH),
                )
            ]
        return self

    def enabled_servers(self) -> list[ServerConfig]:
        return [s for s in self.SERVERS if s.enabled]

    def get_server(self, server_id: str) -> ServerConfig | None:
        for s in self.SERVERS:
            if s.id == server_id:
                return s
        return None

    def keep_days_for(self, server: ServerConfig) -> int:
        return server.save.backup_keep_days or self.BACKUP_KEEP_DAYS or 7


settings = Settings()
