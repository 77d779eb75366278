from pydantic_settings import BaseSettings
from typing import Dict, Any

class Settings(BaseSettings):
    # OpenAI Configuration
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4.1-mini"
    # Model used specifically for face similarity scoring and spoof labelling
    FACE_MODEL: str = "gpt-4.1-mini"

    # Persistence / media
    DATABASE_URL: str = "sqlite:///./verifications.db"
    MEDIA_ROOT: str = "./media"
    MEDIA_DOWNLOAD_TIMEOUT_SECONDS: float = 30

    # Face match: similarity (0-100) below which liveness fails and the
    # face-match flag is raised. Organizations may override it.
    FACE_MATCH_THRESHOLD: float = 80

    # Template / layout plausibility
    TEMPLATE_MIN_WIDTH: int = 200
    TEMPLATE_MIN_HEIGHT: int = 120
    TEMPLATE_MIN_ASPECT: float = 0.5
    TEMPLATE_MAX_ASPECT: float = 3.5

    # Image Quality Thresholds
    MIN_IMAGE_WIDTH: int = 640
    MIN_IMAGE_HEIGHT: int = 480
    BLUR_THRESHOLD: float = 100

    # Tampering heuristics
    TAMPER_MIN_SIZE: int = 50
    TAMPER_REENCODE_RATIO: float = 0.5
    TAMPER_MIN_SHARPNESS: float = 50

    # Video liveness
    LIVENESS_SAMPLE_FRAMES: int = 10
    LIVENESS_MIN_SAMPLE_GAP_SECONDS: float = 0.5
    LIVENESS_MOVEMENT_THRESHOLD: float = 0.02

    # Decision Rules
    INFORMATIONAL_CHECK_DEDUCTION: int = 3
    SPOOF_RISK_THRESHOLD: int = 70
    SPOOF_LABEL_MIN_SCORE: float = 0.7
    BEHAVIORAL_RISK_THRESHOLD: int = 70

    # Job queue
    JOB_QUEUE_CONCURRENCY: int = 3
    JOB_MAX_ATTEMPTS: int = 3
    JOB_RETRY_BASE_SECONDS: float = 1.0

    # Webhooks
    WEBHOOK_TIMEOUT_SECONDS: float = 8

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

settings = Settings()

# Document type configurations
DOCUMENT_CONFIGS: Dict[str, Dict[str, Any]] = {
    "passport": {
        "label": "Passport",
        "id_regex": r"^[A-Z0-9]{6,12}$",
        "required_fields": ["full_name", "id_number", "date_of_birth"],
        "optional_fields": ["expiry_date", "address", "issue_date"]
    },
    "aadhaar": {
        "label": "Aadhaar card",
        "id_regex": r"^\d{12}$",
        "required_fields": ["full_name", "id_number", "date_of_birth"],
        "optional_fields": ["address"]
    },
    "pan": {
        "label": "PAN card",
        "id_regex": r"^[A-Z]{5}\d{4}[A-Z]$",
        "required_fields": ["full_name", "id_number", "date_of_birth"],
        "optional_fields": ["father_name"]
    },
    "nric": {
        "label": "Singapore NRIC",
        "id_regex": r"^[STGF]\d{7}[A-Z]$",
        "required_fields": ["full_name", "id_number", "date_of_birth"],
        "optional_fields": ["address"]
    },
    "driving_license": {
        "label": "Driving license",
        "id_regex": r"^[A-Z0-9\- ]{6,20}$",
        "required_fields": ["full_name", "id_number", "date_of_birth"],
        "optional_fields": ["issue_date", "expiry_date", "address"]
    }
}

# Keywords preceding an expiry date in OCR text
EXPIRY_KEYWORDS = [
    "date of expiry",
    "expiry date",
    "expiration date",
    "valid until",
    "valid till",
    "expires",
]

# Labels returned by the vision model that suggest a photographed screen
SCREEN_LABEL_KEYWORDS = ["screen", "monitor", "display", "lcd", "computer"]
