import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field


class CreditlineConfig(BaseModel):
    """
    Process-level configuration for tools built on the engine.
    Decouples the engine from environment variables.
    """

    # Firestore
    firestore_project: Optional[str] = Field(None, description="Google Cloud project that holds the ledger")
    credentials_path: Optional[str] = Field(None, description="Service account JSON; application default credentials when unset")

    # Pricing
    pricing_config_path: Optional[str] = Field(None, description="Pricing policy JSON; bundled defaults when unset")

    # Logging
    log_level: str = Field("INFO", description="Root log level for command line tools")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "CreditlineConfig":
        env = os.environ if env is None else env
        return cls(
            firestore_project=env.get("CREDITLINE_FIRESTORE_PROJECT") or env.get("GOOGLE_CLOUD_PROJECT"),
            credentials_path=env.get("CREDITLINE_CREDENTIALS") or env.get("GOOGLE_APPLICATION_CREDENTIALS"),
            pricing_config_path=env.get("CREDITLINE_PRICING_CONFIG"),
            log_level=env.get("CREDITLINE_LOG_LEVEL", "INFO"),
        )
