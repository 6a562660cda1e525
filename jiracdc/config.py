"""Application configuration"""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database (sync ledger)
    database_url: str = "sqlite:///./jiracdc.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Jira source
    jira_base_url: str = ""
    jira_project_key: str = ""
    # Credentials come either from a mounted secret directory holding `username` and
    # `token` files, or from the two env-backed fields below.
    jira_credentials_dir: Optional[str] = None
    jira_username: Optional[str] = None
    jira_api_token: Optional[str] = None
    jira_requests_per_second: float = 10.0
    jira_burst: int = 20
    jira_timeout_seconds: float = 30.0
    jira_max_retries: int = 3

    # Sync behaviour
    active_issues_only: bool = False
    bootstrap_page_size: int = 50
    search_limit: int = 1000

    # Git target
    git_repository_url: str = ""
    git_branch: str = "main"
    git_working_directory: str = "./data/repo"
    git_issues_directory: str = ""
    git_author_name: str = "JIRA CDC"
    git_author_email: str = "jiracdc@localhost"

    # Scheduling
    poll_interval_minutes: int = 5
    operation_retention_days: int = 7
    retention_check_interval_minutes: int = 60

    # Orchestration
    max_parallel_tasks: int = 2
    max_concurrent_operations: int = 2

    # Logging
    log_level: str = "INFO"

    # Auth (optional)
    # When set, control endpoints require `Authorization: Bearer <api_token>` and the
    # Jira webhook must carry `?token=<webhook_token>`.
    api_token: Optional[str] = None
    webhook_token: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
