"""Konfigurationsmanagement mit Pydantic Settings.

Lädt Konfiguration aus Environment-Variablen und .env-Datei.
Alle Schwellwerte und Limits der Entscheidungs-Pipeline sind hier
zentral definiert und werden nicht pro Aufruf hart kodiert.
"""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Erlaubte Log-Level."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class Settings(BaseSettings):
    """Zentrale Konfiguration des Decision Core.

    Keine Pflichtfelder: ohne ANTHROPIC_API_KEY startet der Core, nur
    LLM-Aufrufe schlagen dann mit LLMConfigError fehl.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        # ENV-Variablen haben Vorrang vor .env-Datei
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    # --- LLM ---
    anthropic_api_key: Optional[str] = Field(
        default=None,
        description="API-Key aus der Anthropic Console",
    )
    default_model: str = Field(
        default="claude-sonnet-4-5-20250929",
        description="Modell für Klassifizierung, Rückfragen und Attribut-Extraktion",
    )
    llm_max_tokens: int = Field(
        default=2048,
        ge=256,
        description="Maximale Anzahl Output-Tokens pro LLM-Aufruf",
    )

    # --- Confidence-Routing ---
    high_confidence_threshold: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Oberhalb dieser Confidence wird ohne Rückfragen klassifiziert",
    )
    low_confidence_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Unterhalb dieser Confidence ist manuelle Prüfung Pflicht",
    )

    # --- Rückfrage-Dialog ---
    soft_turn_limit: int = Field(
        default=8,
        ge=1,
        description="Ab dieser Anzahl Runden wird gewarnt, der Dialog läuft weiter",
    )
    hard_turn_limit: int = Field(
        default=15,
        ge=1,
        description="Maximale Anzahl Rückfragen pro Fall",
    )

    # --- Retry / Timeout ---
    llm_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout pro Kollaborator-Aufruf in Sekunden",
    )
    llm_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Anzahl Versuche pro Kollaborator-Aufruf (inkl. erstem)",
    )
    retry_backoff_min_seconds: float = Field(default=1.0, ge=0.0)
    retry_backoff_max_seconds: float = Field(default=10.0, ge=0.0)

    # --- Lernkreislauf ---
    agreement_threshold: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Unterschreitet eine Kategorie diese Quote, startet eine Analyse",
    )
    learning_min_interval_h: int = Field(
        default=24,
        ge=0,
        description="Mindestabstand in Stunden zwischen automatischen Analysen",
    )
    validation_sample_ratio: float = Field(default=0.1, gt=0.0, le=1.0)
    validation_min_sample: int = Field(default=10, ge=1)

    # --- Logging ---
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Log-Level für die Anwendung",
    )

    # --- Pfade ---
    data_dir: Path = Field(
        default=Path("./data"),
        description="Verzeichnis für SQLite-DB und Logs",
    )

    @field_validator("anthropic_api_key")
    @classmethod
    def validate_api_key_format(cls, v: Optional[str]) -> Optional[str]:
        """Grundlegende Formatprüfung des API-Keys (falls gesetzt)."""
        if v is not None and not v.startswith("sk-ant-"):
            raise ValueError(
                "ANTHROPIC_API_KEY muss mit 'sk-ant-' beginnen. "
                "Bitte Key aus der Anthropic Console prüfen."
            )
        return v

    @model_validator(mode="after")
    def validate_thresholds(self) -> "Settings":
        """Schwellwerte und Limits müssen zueinander passen."""
        if self.low_confidence_threshold >= self.high_confidence_threshold:
            raise ValueError(
                "LOW_CONFIDENCE_THRESHOLD muss kleiner als "
                "HIGH_CONFIDENCE_THRESHOLD sein"
            )
        if self.soft_turn_limit > self.hard_turn_limit:
            raise ValueError("SOFT_TURN_LIMIT darf HARD_TURN_LIMIT nicht übersteigen")
        return self

    @property
    def db_path(self) -> Path:
        """Pfad zur SQLite-Datenbank."""
        return self.data_dir / "decision_core.db"

    @property
    def log_dir(self) -> Path:
        """Pfad zum Log-Verzeichnis."""
        return self.data_dir / "logs"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Gibt die Settings-Instanz zurück (Lazy Singleton).

    Wird beim ersten Aufruf erstellt und danach wiederverwendet.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
