import os

from dotenv import load_dotenv

load_dotenv()

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./agrisense.db")

# --- Auth ---
SECRET_KEY = os.getenv("SECRET_KEY", "default_secret_key")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    if origin.strip()
]

# --- Analysis providers ---
AI_PROVIDER = os.getenv("AI_PROVIDER", "openai").lower()
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1")
OPENAI_CHAT_MODEL = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini")
SMYTHOS_OUTBOUND_ANALYSIS_URL = os.getenv("SMYTHOS_OUTBOUND_ANALYSIS_URL", "")
SMYTHOS_ANALYSIS_CALLBACK_URL = os.getenv("SMYTHOS_ANALYSIS_CALLBACK_URL", "")
SMYTHOS_CHATBOT_CALLBACK_URL = os.getenv("SMYTHOS_CHATBOT_CALLBACK_URL", "")
PROVIDER_TIMEOUT_SECONDS = 20.0
INTERNAL_API_TOKEN = os.getenv("INTERNAL_API_TOKEN")

# --- Weather ---
WEATHER_API_KEY = os.getenv("WEATHER_API_KEY")
WEATHER_API_URL = os.getenv("WEATHER_API_URL", "https://api.openweathermap.org/data/2.5")

# --- SMS gateway ---
SMS_API_URL = os.getenv("SMS_API_URL", "http://bulksmsbd.net/api/smsapi")
SMS_API_KEY = os.getenv("SMS_API_KEY")
SMS_SENDER_ID = os.getenv("SMS_SENDER_ID")

# --- Voice (Retell AI) ---
RETELL_API_URL = os.getenv("RETELL_API_URL", "https://api.retellai.com")
RETELL_API_KEY = os.getenv("RETELL_API_KEY")
RETELL_AGENT_ID = os.getenv("RETELL_AGENT_ID")
RETELL_FROM_NUMBER = os.getenv("RETELL_FROM_NUMBER")

# Timeout for weather, SMS and voice HTTP calls
HTTP_TIMEOUT_SECONDS = 15.0

# --- Scheduler ---
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")
SCHEDULER_TIMEZONE = os.getenv("SCHEDULER_TIMEZONE", "Asia/Dhaka")
DAILY_ANALYTICS_HOUR = int(os.getenv("DAILY_ANALYTICS_HOUR", 7))
MOISTURE_CHECK_INTERVAL_HOURS = 2
