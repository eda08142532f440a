# config.py
import os
import logging
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "ckd_pipeline.yaml"


class EGFRSettings(BaseModel):
    # MDRD population adjustment; 1.0 leaves the formula unadjusted
    ethnicity_factor: float = 1.212
    test_name: str = "DFG estimé"

    @field_validator("ethnicity_factor")
    @classmethod
    def validate_factor(cls, v):
        if v <= 0:
            raise ValueError(f"ethnicity_factor must be positive, got {v}")
        return v


class EmailSettings(BaseModel):
    host: str = "smtp.gmail.com"
    port: int = 587
    use_tls: bool = True
    user: Optional[str] = None
    password: Optional[str] = None
    sender: Optional[str] = None
    timeout: float = 30


class SMSSettings(BaseModel):
    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    from_number: Optional[str] = None
    api_base: str = "https://api.twilio.com/2010-04-01"
    timeout: float = 30


class PipelineConfig(BaseModel):
    database_url: str = "sqlite:///ckd_pipeline.db"
    log_level: str = "INFO"
    catalog_csv: str = "data/lab_tests.csv"
    stage_update_retries: int = Field(default=3, ge=1)
    egfr: EGFRSettings = Field(default_factory=EGFRSettings)
    email: EmailSettings = Field(default_factory=EmailSettings)
    sms: SMSSettings = Field(default_factory=SMSSettings)


def load_yaml(path):
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f)


def apply_env_overrides(raw: dict) -> dict:
    """
    Credentials come from the environment when set, the way the
    deployment provides them.
    """
    email = raw.setdefault("email", {}) or {}
    sms = raw.setdefault("sms", {}) or {}
    raw["email"], raw["sms"] = email, sms

    env_map = [
        (email, "user", "EMAIL_USER"),
        (email, "password", "EMAIL_PASS"),
        (sms, "account_sid", "TWILIO_ACCOUNT_SID"),
        (sms, "auth_token", "TWILIO_AUTH_TOKEN"),
        (sms, "from_number", "TWILIO_PHONE_NUMBER"),
    ]
    for section, key, env_name in env_map:
        value = os.environ.get(env_name)
        if value:
            section[key] = value
    if os.environ.get("DATABASE_URL"):
        raw["database_url"] = os.environ["DATABASE_URL"]
    return raw


def load_config(path: Optional[str] = None) -> PipelineConfig:
    path = path or os.environ.get("CKD_PIPELINE_CONFIG", DEFAULT_CONFIG_PATH)
    raw = {}
    if os.path.exists(path):
        logger.info(f"Loading pipeline config from {path}")
        raw = load_yaml(path) or {}
    else:
        logger.info(f"No config file at {path}, using defaults")
    return PipelineConfig(**apply_env_overrides(raw))
