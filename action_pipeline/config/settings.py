"""Action Pipeline configuration — environment driven (ACTION_PIPELINE_*)."""

from functools import lru_cache
from typing import List, Optional, Set

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    # Types hidden from upstream listings; still executable when reached directly
    hidden_action_types: List[str] = ["TASK", "LOOKUP"]
    # Types whose execute is feature-flagged off (no write, "disabled" outcome)
    disabled_action_types: List[str] = ["TASK", "LOOKUP"]

    store_timeout_seconds: float = Field(default=10.0, gt=0)
    composition_timeout_seconds: float = Field(default=120.0, gt=0)
    max_execution_attempts: int = Field(default=2, ge=1)

    composition_workflow_url: Optional[str] = None
    composition_api_key: Optional[str] = None

    database_path: str = ":memory:"
    audit_database_path: str = ":memory:"

    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_prefix="ACTION_PIPELINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def hidden_types(self) -> Set[str]:
        return set(self.hidden_action_types)

    def is_disabled(self, action_type: str) -> bool:
        return action_type in self.disabled_action_types


@lru_cache
def get_settings() -> PipelineSettings:
    return PipelineSettings()
