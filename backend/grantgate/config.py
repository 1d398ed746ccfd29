from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Grantgate API"
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True
    log_level: str = "INFO"
    request_id_header: str = "X-Request-ID"

    database_url: str = "sqlite:///./grantgate.db"

    # Vector search collaborator. Left empty, every lookup fails and the gate degrades fail-safe.
    retrieval_url: str = ""
    retrieval_api_key: str = ""
    retrieval_top_k: int = 5
    retrieval_timeout_seconds: float = 5.0
    retrieval_max_concurrency: int = 8

    verified_similarity: float = 0.85
    partial_similarity: float = 0.70
    coverage_section_warn: int = 40
    min_mapping_confidence: float = 0.3
    low_mapping_confidence: float = 0.6
    claim_context_chars: int = 100
    high_risk_number_threshold: int = 10_000
    max_supporting_chunks: int = 3

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


DEFAULT_RISK_TABLE: dict[str, str] = {
    "CURRENCY": "HIGH",
    "PERCENTAGE": "HIGH",
    "OUTCOME": "HIGH",
    "NAMED_ORG": "MEDIUM",
    "NUMBER": "MEDIUM",
    "DATE": "LOW",
}


class GateConfig(BaseModel):
    """Tunable thresholds for the export gate.

    Passed explicitly into every engine so boundary values can be probed in
    isolation. ``risk_table`` maps claim type names to the default risk level;
    NUMBER claims at or above ``high_risk_number_threshold`` are escalated to HIGH.
    """

    model_config = ConfigDict(frozen=True)

    verified_similarity: float = Field(default=0.85, ge=0.0, le=1.0)
    partial_similarity: float = Field(default=0.70, ge=0.0, le=1.0)
    coverage_section_warn: int = Field(default=40, ge=0, le=100)
    min_mapping_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    low_mapping_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    claim_context_chars: int = Field(default=100, ge=0)
    high_risk_number_threshold: int = Field(default=10_000, ge=1)
    max_supporting_chunks: int = Field(default=3, ge=1)
    retrieval_top_k: int = Field(default=5, ge=1, le=50)
    retrieval_timeout_seconds: float = Field(default=5.0, gt=0)
    retrieval_max_concurrency: int = Field(default=8, ge=1)
    risk_table: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_RISK_TABLE))

    @classmethod
    def from_settings(cls, source: Settings) -> "GateConfig":
        return cls(
            verified_similarity=source.verified_similarity,
            partial_similarity=source.partial_similarity,
            coverage_section_warn=source.coverage_section_warn,
            min_mapping_confidence=source.min_mapping_confidence,
            low_mapping_confidence=source.low_mapping_confidence,
            claim_context_chars=source.claim_context_chars,
            high_risk_number_threshold=source.high_risk_number_threshold,
            max_supporting_chunks=source.max_supporting_chunks,
            retrieval_top_k=source.retrieval_top_k,
            retrieval_timeout_seconds=source.retrieval_timeout_seconds,
            retrieval_max_concurrency=source.retrieval_max_concurrency,
        )


settings = Settings()
