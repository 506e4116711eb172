import os

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    DATA_DIR: str = os.getenv("DATA_DIR", "./showroom/data")
    BASE_URL: str = os.getenv("BASE_URL", "http://localhost:8000")

    CLOUDINARY_CLOUD_NAME: str = os.getenv("CLOUDINARY_CLOUD_NAME", "")
    CLOUDINARY_API_KEY: str = os.getenv("CLOUDINARY_API_KEY", "")
    CLOUDINARY_API_SECRET: str = os.getenv("CLOUDINARY_API_SECRET", "")
    CLOUDINARY_TIMEOUT_SECONDS: float = float(os.getenv("CLOUDINARY_TIMEOUT_SECONDS", "60"))
    WEBHOOK_VERIFY: bool = _flag("WEBHOOK_VERIFY", "false")

    GENERATIVE_FILL_PATH: str = os.getenv("GENERATIVE_FILL_PATH", "/api/cloudinary/generative-fill")
    MOCK_FILL_PATH: str = os.getenv("MOCK_FILL_PATH", "/api/cloudinary/mock-fill")
    LISTING_IMAGES_PATH: str = os.getenv("LISTING_IMAGES_PATH", "/api/listings/{listing_id}/images")

    # submission and polling
    SUBMIT_TIMEOUT_SECONDS: float = float(os.getenv("SUBMIT_TIMEOUT_SECONDS", "30"))
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
    MAX_POLLS: int = int(os.getenv("MAX_POLLS", "24"))
    SINGLE_JOB_MAX_POLLS: int = int(os.getenv("SINGLE_JOB_MAX_POLLS", "12"))

    # simulated service behavior
    MOCK_DELAY_SECONDS: float = float(os.getenv("MOCK_DELAY_SECONDS", "1.5"))
    MOCK_ASYNC_RATE: float = float(os.getenv("MOCK_ASYNC_RATE", "0.3"))
    MOCK_COMPLETE_RATE: float = float(os.getenv("MOCK_COMPLETE_RATE", "0.5"))

    DEFAULT_PROMPT: str = os.getenv("DEFAULT_PROMPT", "dealership showroom")
    # finished or saved batch runs are dropped after this long
    BATCH_RUN_TTL_SECONDS: float = float(os.getenv("BATCH_RUN_TTL_SECONDS", "3600"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

settings = Settings()
