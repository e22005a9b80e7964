import os

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "natours")

# Auth
SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(90 * 24 * 60)))

# App
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
API_PREFIX = "/api/v1"

# Ratings
RATINGS_REFRESH_ATTEMPTS = max(1, int(os.getenv("RATINGS_REFRESH_ATTEMPTS", "2")))


def is_production() -> bool:
    return ENVIRONMENT == "production"
