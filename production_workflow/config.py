"""
Configuration management for the production workflow engine.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = Field(default="Production Workflow", env="APP_NAME")
    debug: bool = Field(default=False, env="DEBUG")
    environment: str = Field(default="development", env="ENVIRONMENT")

    # API
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8000, env="API_PORT")
    api_workers: int = Field(default=1, env="API_WORKERS")

    # Database
    database_url: str = Field(
        default="sqlite:///./production_workflow.db", env="DATABASE_URL"
    )

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")

    # Access
    privileged_roles: str = Field(
        default="manager,supervisor",
        env="PRIVILEGED_ROLES",
        description="Comma-separated roles allowed to edit templates/rules and move batches.",
    )

    # Notifications
    slack_webhook_url: Optional[str] = Field(default=None, env="SLACK_WEBHOOK_URL")
    notification_timeout_seconds: float = Field(
        default=10.0, env="NOTIFICATION_TIMEOUT_SECONDS"
    )

    # Workflow engine
    transition_max_retries: int = Field(default=3, env="TRANSITION_MAX_RETRIES")
    automation_action_timeout_seconds: float = Field(
        default=30.0, env="AUTOMATION_ACTION_TIMEOUT_SECONDS"
    )
    round_robin_persistent: bool = Field(default=True, env="ROUND_ROBIN_PERSISTENT")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def privileged_role_set(self) -> List[str]:
        """Parse privileged_roles into a list, ignoring blanks."""
        return [role.strip() for role in self.privileged_roles.split(",") if role.strip()]


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
