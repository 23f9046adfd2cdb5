import os

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


STORE_BACKEND = os.getenv("STORE_BACKEND", "postgres").strip().lower()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

SESSION_TTL_SECONDS = _int_env("SESSION_TTL_SECONDS", 3600)
ADMIN_VOTER_IDS = frozenset(
    x.strip() for x in os.getenv("ADMIN_VOTER_IDS", "").split(",") if x.strip()
)

OTP_DIGITS = 6
OTP_EXPIRY_MINUTES = _int_env("OTP_EXPIRY_MINUTES", 5)
OTP_MAX_ATTEMPTS = _int_env("OTP_MAX_ATTEMPTS", 5)
OTP_RESEND_COOLDOWN_SECONDS = _int_env("OTP_RESEND_COOLDOWN_SECONDS", 30)

# A passed OTP or face check stays usable for casting this long.
VERIFICATION_TTL_SECONDS = _int_env("VERIFICATION_TTL_SECONDS", 600)

FACE_MATCH_THRESHOLD = 80.0
MAX_IMAGE_BYTES = 10 * 1024 * 1024
FACE_COMPARE_URL = os.getenv("FACE_COMPARE_URL", "")
FACE_COMPARE_API_KEY = os.getenv("FACE_COMPARE_API_KEY", "")

HTTP_TIMEOUT_SECONDS = _float_env("HTTP_TIMEOUT_SECONDS", 15.0)

EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
EXPO_ACCESS_TOKEN = os.getenv("EXPO_ACCESS_TOKEN", "")
PUSH_BATCH_SIZE = _int_env("PUSH_BATCH_SIZE", 100)
NOTIFY_WORKERS = _int_env("NOTIFY_WORKERS", 2)

LIFECYCLE_SWEEP_SECONDS = _int_env("LIFECYCLE_SWEEP_SECONDS", 30)

FACULTIES = {
    "Applied Sciences": 1050,
    "Law": 1250,
    "Medical Sciences": 1500,
    "Pharmacy": 2100,
}
GENERAL_SCOPE = "general"
