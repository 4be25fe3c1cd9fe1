"""
Import Configuration

Uses pydantic-settings for environment variable loading with validation.
CLI options override the values loaded here.
"""

from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_FILE_EXTENSIONS = "doc,docx,odt,pdf,xls,xlsx,ods,ppt,pptx,txt"


class ImportSettings(BaseSettings):
    """
    Import settings loaded from environment variables.

    Environment variables can be set directly or via .env file.
    The CMS application password should only come from the environment.
    """

    model_config = SettingsConfigDict(
        env_prefix="DB2CMS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Source database
    # ==========================================================================
    source_database_url: str | None = Field(
        default=None,
        description="SQLAlchemy URL of the external database (e.g. mysql+pymysql://...)",
    )

    source_query: str | None = Field(
        default=None,
        description="SQL query returning the rows to import; may use :post_type",
    )

    # ==========================================================================
    # Target CMS
    # ==========================================================================
    cms_url: str = Field(
        default="http://localhost:8080",
        description="Base URL of the WordPress site",
    )

    cms_username: str | None = Field(default=None, description="CMS user name")

    cms_password: str | None = Field(
        default=None, description="CMS application password"
    )

    local_domain: str | None = Field(
        default=None,
        description="Domain treated as local; defaults to the host of cms_url",
    )

    request_timeout: float = Field(default=30.0, description="CMS request timeout in seconds")

    download_timeout: float = Field(
        default=60.0, description="Remote asset download timeout in seconds"
    )

    # ==========================================================================
    # Import behaviour
    # ==========================================================================
    batch_flush_size: int = Field(
        default=500, ge=1, description="Flush host caches every N processed records"
    )

    default_status: str = Field(
        default="draft", description="Status used when a record carries none"
    )

    file_extensions: str = Field(
        default=DEFAULT_FILE_EXTENSIONS,
        description="Comma-separated linked-file extensions to sideload",
    )

    search_existing_media: bool = Field(
        default=True, description="Reuse media already present in the library"
    )

    uploads_dir: Path | None = Field(
        default=None,
        description="Local uploads directory checked as a last-resort media lookup",
    )

    unique_terms: bool = Field(
        default=False, description="Drop duplicate term names within a taxonomy"
    )

    redirect_group_name: str = Field(
        default="db2cms-migration", description="Redirection rule group name"
    )

    @computed_field
    @property
    def home_domain(self) -> str:
        """Host (and port, if any) whose URLs are already local."""
        if self.local_domain:
            return self.local_domain.strip().lower()
        return urlparse(self.cms_url).netloc.lower()

    @computed_field
    @property
    def file_extensions_list(self) -> list[str]:
        """Parse the linked-file extension allow-list."""
        return [
            ext.strip().lstrip(".").lower()
            for ext in self.file_extensions.split(",")
            if ext.strip()
        ]


@lru_cache
def get_settings() -> ImportSettings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return ImportSettings()
