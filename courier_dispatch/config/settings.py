import os
from dotenv import load_dotenv
from typing import Optional


def _float_list(raw: str) -> list:
    return [float(part) for part in raw.split(",") if part.strip()]


class Config:
    def __init__(self):
        load_dotenv()

        # App Environment
        self.APP_ENV = os.getenv("APP_ENV", "production")
        self.DEBUG = os.getenv("DEBUG", "False").lower() == "true"
        self.PORT = int(os.getenv("PORT", 5000))
        self.HOST = os.getenv("HOST", "127.0.0.1")

        # Token verification (tokens are issued by the auth service)
        self.SECRET_KEY = os.getenv("SECRET_KEY")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

        # Database Config
        self.DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")
        self.DB_HOST = os.getenv("DB_HOST")
        self.DB_PORT = os.getenv("DB_PORT")
        self.DB_NAME = os.getenv("DB_NAME")
        self.DB_USER = os.getenv("DB_USER")
        self.DB_PASSWORD = os.getenv("DB_PASSWORD")

        # Dispatch
        self.SEARCH_RADII_KM = _float_list(os.getenv("SEARCH_RADII_KM", "5,10,15"))
        self.MAX_OFFERS = int(os.getenv("MAX_OFFERS", 3))
        self.OFFER_TTL_SECONDS = int(os.getenv("OFFER_TTL_SECONDS", 120))
        self.MAX_ESCALATIONS = int(os.getenv("MAX_ESCALATIONS", 1))
        self.LOCATION_FRESHNESS_SECONDS = int(os.getenv("LOCATION_FRESHNESS_SECONDS", 300))
        self.DEFAULT_COURIER_RATING = float(os.getenv("DEFAULT_COURIER_RATING", 4.5))
        self.STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", 3))
        self.STORE_RETRY_BACKOFF_SECONDS = float(os.getenv("STORE_RETRY_BACKOFF_SECONDS", 0.2))
        self.EXPIRY_SWEEP_INTERVAL_SECONDS = int(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", 15))

        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_FILE = os.getenv("LOG_FILE", "logs/dispatch.log")

        # CORS
        self.ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*")

        # Validate configuration
        self._validate()

    def _validate(self):
        required_fields = ["SECRET_KEY"]
        if not self.DATABASE_URL:
            required_fields += ["DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD"]

        for field in required_fields:
            if not getattr(self, field):
                raise ValueError(f"Missing required configuration: {field}")

        if len(self.SEARCH_RADII_KM) < 2:
            raise ValueError("SEARCH_RADII_KM needs at least two radii")
        if self.SEARCH_RADII_KM != sorted(self.SEARCH_RADII_KM):
            raise ValueError("SEARCH_RADII_KM must be ascending")
        if self.MAX_OFFERS < 1:
            raise ValueError("MAX_OFFERS must be at least 1")
        if self.OFFER_TTL_SECONDS <= 0:
            raise ValueError("OFFER_TTL_SECONDS must be positive")
