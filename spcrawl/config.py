# ============================================================================
# spcrawl - Application Configuration
# ============================================================================
"""
Application configuration module using Pydantic Settings.

This module defines the configuration parameters for spcrawl, including:
- SharePoint tenant and credential settings
- Search pagination and change-log crawl behavior
- Transport timeouts and retry policy
- Download location for fetched binaries

Environment Variables:
    Every field maps to an upper-case environment variable of the same name
    (e.g. SHAREPOINT_COMPANY_URL). A .env file in the working directory is
    read as well.

Usage:
    from spcrawl.config import settings
    page_size = settings.sharepoint_page_size
"""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # =========================================================================
    # TENANT & CREDENTIALS
    # =========================================================================
    sharepoint_company_url: Optional[str] = Field(
        default=None,
        description="Tenant root URL (e.g. https://mycompany.sharepoint.com)",
    )
    sharepoint_username: Optional[str] = Field(default=None, description="Account used for the crawl")
    sharepoint_password: Optional[str] = Field(default=None, description="Password for the crawl account")
    sharepoint_client_id: Optional[str] = Field(default=None, description="Azure AD application (client) ID")
    sharepoint_client_secret: Optional[str] = Field(default=None, description="Client secret for app-only access")
    sharepoint_tenant_id: str = Field(default="organizations", description="Azure AD tenant ID or alias")
    sharepoint_token_url: Optional[str] = Field(default=None, description="Override for the OAuth token endpoint")

    # =========================================================================
    # CRAWL BEHAVIOR
    # =========================================================================
    sharepoint_page_size: int = Field(default=500, description="Rows requested per search page")
    sharepoint_document_library: str = Field(default="Documents", description="Library tracked per site")
    sharepoint_personal_marker: str = Field(
        default="personal",
        description="Path segment identifying per-user (OneDrive) sites",
    )
    sharepoint_max_concurrent_sites: int = Field(default=1, description="Sites crawled in parallel (1 = sequential)")

    # =========================================================================
    # TRANSPORT
    # =========================================================================
    sharepoint_timeout: float = Field(default=60.0, description="Timeout (s) for SharePoint requests")
    sharepoint_max_retries: int = Field(default=3, description="Retry count for transient request failures")
    sharepoint_retry_delay_seconds: float = Field(default=30.0, description="Delay (s) between retries")

    # =========================================================================
    # STORAGE & LOGGING
    # =========================================================================
    download_dir: Optional[str] = Field(default=None, description="Directory for downloaded files (system temp if unset)")
    log_level: str = Field(default="INFO", description="Root log level for the command line")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def download_path(self) -> Optional[Path]:
        return Path(self.download_dir) if self.download_dir else None


# Global settings instance (imported elsewhere)
settings = Settings()
