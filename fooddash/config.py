from typing import Literal

from pydantic_settings import BaseSettings

Schedule = Literal["daily", "weekly", "monthly"]


class Settings(BaseSettings):
    # Core DB
    DATABASE_URL: str = "sqlite:///./fooddash.db"

    # Commission / settlement
    PLATFORM_COMMISSION_RATE: float = 0.18
    RESTAURANT_SETTLEMENT_SCHEDULE: Schedule = "daily"
    DRIVER_SETTLEMENT_SCHEDULE: Schedule = "daily"
    SETTLEMENT_HOUR: int = 9
    SETTLEMENT_TIMEZONE: str = "Asia/Manila"

    # Delivery pricing (PHP)
    DEFAULT_DELIVERY_FEE: float = 50.0
    DELIVERY_FEE_PER_KM: float = 10.0
    FREE_DELIVERY_KM: float = 3.0
    MAX_DELIVERY_DISTANCE_KM: float = 15.0
    AVERAGE_PREP_TIME_MIN: int = 30
    SAFETY_BUFFER_MIN: int = 5

    # Driver scoring
    PROXIMITY_WEIGHT: float = 0.5
    RATING_WEIGHT: float = 0.3
    EXPERIENCE_WEIGHT: float = 0.2
    SCORING_CONCURRENCY: int = 8  # max parallel route lookups per assignment

    # What happens to an order when every other driver is gone on reassign
    # Allowed: "keep" (stays with the rejecting driver), "release" (back to PENDING)
    REASSIGN_EXHAUSTED_POLICY: Literal["keep", "release"] = "keep"

    # Routing
    ROUTING_BASE_URL: str = "https://router.project-osrm.org"
    ROUTING_TIMEOUT_S: float = 10.0

    # SMS (Semaphore)
    SEMAPHORE_API_URL: str = "https://api.semaphore.co/api/v4"
    SEMAPHORE_API_KEY: str = ""
    SEMAPHORE_SENDER_NAME: str = "PHFoodDel"
    NOTIFY_TIMEOUT_S: float = 10.0

    # Payouts (GCash)
    GCASH_API_URL: str = "https://api.gcash.com/v1"
    GCASH_APP_ID: str = ""
    GCASH_APP_SECRET: str = ""
    GCASH_MERCHANT_ID: str = ""
    PAYOUT_TIMEOUT_S: float = 30.0

    # Links in customer SMS + CORS
    APP_URL: str = "http://localhost:8000"
    APP_DOMAIN: str | None = None

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"


settings = Settings()
