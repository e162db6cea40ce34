"""
Configuration settings for the onboarding portal.
Uses pydantic-settings for environment variable management.
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Case-management (Kora) service
    KORA_API_URL: str = Field(
        "http://localhost:8000",
        description="Base URL of the case-management API"
    )
    KORA_TENANT_KEY: Optional[str] = Field(None, description="Tenant key sent as X-Tenant-Key")
    TENANT_CODE: str = Field("sitara-core", description="Tenant code used when creating applications")
    REQUEST_TIMEOUT_SECONDS: float = Field(15.0, description="Per-request HTTP timeout")

    # Application Mode
    DEBUG: bool = Field(True, description="Enable debug mode")
    DEV_MODE: bool = Field(False, description="Bypass document and evidence requirements while testing")
    DEMO_MODE: bool = Field(True, description="Use the in-memory case-management mock (no real backend needed)")

    # Local draft mirror
    STORAGE_DIR: str = Field(".onboarding_storage", description="Directory used as local storage")
    STORAGE_KEY: str = Field("sitara_onboarding_answers_v1", description="Storage key for the answers mirror")

    # Flow behaviour
    IDENTITY_JURISDICTION: str = Field(
        "United Arab Emirates",
        description="Country of residence that requires Emirates ID upload"
    )
    EVIDENCE_GATED_ACCOUNT_TYPES: List[str] = Field(
        default=["business", "individual"],
        description="Account types whose submission waits for a complete evidence pack"
    )
    QUESTIONNAIRE_CODE: str = Field("uae_business_questions", description="Questionnaire code for business answers")

    # Server Configuration (sandbox API)
    HOST: str = Field("0.0.0.0", description="Server host")
    PORT: int = Field(8000, description="Server port")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


def get_project_root() -> Path:
    """Get the project root directory."""
    return Path(__file__).parent.parent


def validate_settings() -> tuple[bool, list[str]]:
    """
    Validate that the settings make sense for the current mode.
    Returns (is_valid, list of missing/invalid settings).
    """
    issues = []

    s = settings

    if not s.DEMO_MODE:
        if not s.KORA_API_URL.startswith(("http://", "https://")):
            issues.append("KORA_API_URL must be an http(s) URL")
        if not s.KORA_TENANT_KEY:
            issues.append("KORA_TENANT_KEY not set (optional - required by hosted tenants)")

    if s.REQUEST_TIMEOUT_SECONDS <= 0:
        issues.append("REQUEST_TIMEOUT_SECONDS must be positive")

    unknown = [t for t in s.EVIDENCE_GATED_ACCOUNT_TYPES if t not in ("business", "individual")]
    if unknown:
        issues.append(f"EVIDENCE_GATED_ACCOUNT_TYPES has unknown account types: {', '.join(unknown)}")

    if s.DEV_MODE:
        issues.append("DEV_MODE is on (optional - document requirements are bypassed)")

    blocking = [i for i in issues if "optional" not in i.lower()]
    return len(blocking) == 0, issues


# Load .env from project root
env_path = get_project_root() / ".env"
if env_path.exists():
    from dotenv import load_dotenv
    load_dotenv(env_path)

# On Streamlit Cloud, secrets are in .streamlit/secrets.toml
# Load them into os.environ so pydantic-settings can find them
try:
    import streamlit as st
    for key, value in st.secrets.items():
        if isinstance(value, str) and key not in os.environ:
            os.environ[key] = value
except Exception as e:
    logger.debug(f"[Settings] No Streamlit secrets loaded: {e}")

# Global settings instance
settings = Settings()
