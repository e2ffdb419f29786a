import os

from dotenv import load_dotenv

load_dotenv()

# JWT
SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

# База данных
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./workshop_votes.db")

TESTING = os.getenv("TESTING", "").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Бюджет очков одного участника на сессию
TOTAL_POINTS = int(os.getenv("TOTAL_POINTS", "100"))

JOIN_RATE_LIMIT = os.getenv("JOIN_RATE_LIMIT", "20/minute")
VOTE_RATE_LIMIT = os.getenv("VOTE_RATE_LIMIT", "30/minute")

ERROR_TYPE_BASE = os.getenv(
    "ERROR_TYPE_BASE", "https://workshopvotes.example.com/errors"
)
