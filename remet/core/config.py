from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "Remet"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # Matching cutoffs. AUTO_ACCEPT_THRESHOLD is user-tunable within the
    # range exposed in the settings screen; the floor and the exploratory
    # threshold are tunable defaults.
    AUTO_ACCEPT_THRESHOLD: float = Field(default=0.85, ge=0.70, le=0.99)
    AMBIGUOUS_FLOOR: float = Field(default=0.60, ge=0.0, le=1.0)
    EXPLORATORY_THRESHOLD: float = Field(default=0.45, ge=0.0, le=1.0)
    MAX_SUGGESTIONS: int = Field(default=3, ge=1)
    # Added to the score of people already tagged in the same encounter
    ENCOUNTER_BOOST: float = Field(default=0.05, ge=0.0, le=1.0)

    # Quiz
    QUIZ_MAX_DISTRACTORS: int = Field(default=3, ge=0)

    # Detector / encoder
    DETECTION_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    DETECTION_SCORE_THRESHOLD: float = Field(default=0.5, ge=0.0, le=1.0)
    FACE_CROP_PADDING: float = Field(default=0.3, ge=0.0)
    MODELS_PATH: str = "ml_weights"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @model_validator(mode="after")
    def _check_tier_order(self) -> "Settings":
        if self.AMBIGUOUS_FLOOR > self.AUTO_ACCEPT_THRESHOLD:
            raise ValueError(
                f"AMBIGUOUS_FLOOR ({self.AMBIGUOUS_FLOOR}) must not exceed "
                f"AUTO_ACCEPT_THRESHOLD ({self.AUTO_ACCEPT_THRESHOLD})"
            )
        return self


# Instantiate the settings object used as the source of service defaults.
# Services take their tunables as constructor arguments, so tests never
# need to touch this instance.
settings = Settings()
