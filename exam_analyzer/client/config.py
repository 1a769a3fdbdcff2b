"""
Configuration settings for the exam workflow client.
Loads settings from EXAM_CLIENT_* environment variables and .env file.
"""
from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    """Client-side workflow settings."""

    api_base_url: str = "http://localhost:8080"
    request_timeout_seconds: float = 180.0

    # Retry policy: attempts = max_retries + 1, delays base, 2*base, 4*base...
    retry_base_delay_seconds: float = 1.0
    max_retries: int = 4

    # Session persistence
    session_dir: str = ".exam_session"

    # Client-side image downsizing before upload
    downsize_images: bool = True
    image_max_dimension: int = 1920
    jpeg_quality: int = 80
    max_upload_size_mb: int = 10

    # Simulated progress pacing while analysis runs
    min_seconds_per_question: float = 2.0
    max_seconds_per_question: float = 4.0
    analysis_time_budget_seconds: float = 45.0

    class Config:
        env_prefix = "EXAM_CLIENT_"
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024
