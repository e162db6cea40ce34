"""
Explicit configuration handed to the flow controller at construction.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from config.settings import Settings, settings as default_settings


@dataclass(frozen=True)
class FlowConfig:
    dev_mode: bool = False
    tenant_code: str = "sitara-core"
    identity_jurisdiction: str = "United Arab Emirates"
    evidence_gated_account_types: Tuple[str, ...] = ("business", "individual")
    questionnaire_code: str = "uae_business_questions"
    storage_key: str = "sitara_onboarding_answers_v1"
    dashboard_route: str = "/dashboard"

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "FlowConfig":
        s = s or default_settings
        return cls(
            dev_mode=s.DEV_MODE,
            tenant_code=s.TENANT_CODE,
            identity_jurisdiction=s.IDENTITY_JURISDICTION,
            evidence_gated_account_types=tuple(s.EVIDENCE_GATED_ACCOUNT_TYPES),
            questionnaire_code=s.QUESTIONNAIRE_CODE,
            storage_key=s.STORAGE_KEY,
        )
