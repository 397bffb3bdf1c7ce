import os

# Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_DIGITAL_PRODUCT_WEBHOOK_SECRET = os.getenv("STRIPE_DIGITAL_PRODUCT_WEBHOOK_SECRET")
STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", 300))

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# GROQ chat completions
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
GROQ_BASE_URL = os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1")
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant")
GROQ_TIMEOUT_SECONDS = int(os.getenv("GROQ_TIMEOUT_SECONDS", 30))

# Uploads
UPLOAD_ROOT = os.getenv("UPLOAD_ROOT", "uploads")
MAX_FILE_SIZE = 100 * 1024 * 1024
MAX_FILES = 10

# Signed download links handed out after a verified purchase
DOWNLOAD_TOKEN_SECRET = os.getenv("DOWNLOAD_TOKEN_SECRET", "change-me")
DOWNLOAD_TOKEN_TTL_HOURS = int(os.getenv("DOWNLOAD_TOKEN_TTL_HOURS", 72))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DISCORD_ROLE_IDS = {
    "starter": os.getenv("VITE_DISCORD_ROLE_STARTER"),
    "pro": os.getenv("VITE_DISCORD_ROLE_PRO"),
    "empire": os.getenv("VITE_DISCORD_ROLE_EMPIRE"),
}
