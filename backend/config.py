import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./eventpass.db")
SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_HOURS = int(os.getenv("ACCESS_TOKEN_HOURS", "12"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/")
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "whsec_test_secret")
QR_TOKEN_BYTES = int(os.getenv("QR_TOKEN_BYTES", "24"))
TICKET_VALIDITY_DAYS = int(os.getenv("TICKET_VALIDITY_DAYS", "14"))
DEFAULT_VALIDATOR_NAME = os.getenv("DEFAULT_VALIDATOR_NAME", "Door Staff")
TOTP_ISSUER = os.getenv("TOTP_ISSUER", "EventPass")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]
