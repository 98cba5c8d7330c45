from pathlib import Path
import os
from dotenv import load_dotenv
from django.core.exceptions import ImproperlyConfigured

# -----------------------------------------------------
# Helpers
# -----------------------------------------------------
def env(name: str, default=None, *, required: bool = False):
    val = os.getenv(name, default)
    if required and (val is None or (isinstance(val, str) and val.strip() == "")):
        raise ImproperlyConfigured(f"Missing required environment variable: {name}")
    return val

def env_bool(name: str, default: bool = False) -> bool:
    return str(os.getenv(name, str(default))).lower() in {"1", "true", "yes", "on"}

def env_int(name: str, default: int) -> int:
    raw = env(name, str(default))
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ImproperlyConfigured(f"Environment variable {name} must be an integer, got {raw!r}")

# -----------------------------------------------------
# Paths & basics
# -----------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

DEBUG = env_bool("DEBUG", False)

# In production (DEBUG=False) you must set a strong secret in .env
SECRET_KEY = env("DJANGO_SECRET_KEY", "dev-only-secret-key-change-me", required=not DEBUG)

# Keep hosts explicit by default
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "127.0.0.1,localhost,testserver").split(",") if h.strip()]

# -----------------------------------------------------
# Applications
# -----------------------------------------------------
INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",

    # Third-party
    "rest_framework",

    # Local
    "videos",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "cloudstream.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "cloudstream.wsgi.application"

# -----------------------------------------------------
# Database (Postgres if DB_* env vars set, else SQLite)
# -----------------------------------------------------
if os.getenv("DB_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": env("DB_NAME", "cloudstream"),
            "USER": env("DB_USER", "cloudstream"),
            "PASSWORD": env("DB_PASSWORD", ""),
            "HOST": env("DB_HOST", "127.0.0.1"),
            "PORT": env("DB_PORT", "5432"),
            "CONN_MAX_AGE": env_int("DB_CONN_MAX_AGE", 60),  # keep-alive
            "OPTIONS": {
                **({"sslmode": os.getenv("DB_SSLMODE")} if os.getenv("DB_SSLMODE") else {})
            },
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

# -----------------------------------------------------
# Password validation
# -----------------------------------------------------
AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

# -----------------------------------------------------
# Internationalization
# -----------------------------------------------------
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# -----------------------------------------------------
# Static & Media
# -----------------------------------------------------
STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

MEDIA_URL = "/media/"
MEDIA_ROOT = Path(env("MEDIA_ROOT", str(BASE_DIR / "media")))

# Raw uploads land here; each job gets a private working dir under WORK_ROOT
UPLOADS_ROOT = MEDIA_ROOT / "uploads"
WORK_ROOT = Path(env("WORK_ROOT", str(MEDIA_ROOT / "processed")))

# -----------------------------------------------------
# Django REST Framework
# -----------------------------------------------------
REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
        "rest_framework.renderers.BrowsableAPIRenderer" if DEBUG else "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_PARSER_CLASSES": [
        "rest_framework.parsers.JSONParser",
        "rest_framework.parsers.FormParser",
        "rest_framework.parsers.MultiPartParser",
    ],
}

# -----------------------------------------------------
# Logging
# -----------------------------------------------------
LOG_LEVEL = env("LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "standard"},
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        # Reduce noise from verbose third-party libraries
        "botocore": {"level": "WARNING"},
        "boto3": {"level": "WARNING"},
        "urllib3": {"level": "WARNING"},
        "s3transfer": {"level": "WARNING"},
    },
}

# -----------------------------------------------------
# Celery / Redis
# -----------------------------------------------------
CELERY_BROKER_URL = env("CELERY_BROKER_URL", "redis://127.0.0.1:6379/0")
CELERY_RESULT_BACKEND = env("CELERY_RESULT_BACKEND", "redis://127.0.0.1:6379/0")
CELERY_TASK_TRACK_STARTED = True

SWEEP_INTERVAL_SECONDS = env_int("SWEEP_INTERVAL_SECONDS", 30)
CELERY_BEAT_SCHEDULE = {
    "sweep-claimable-jobs": {
        "task": "videos.tasks.sweep_claimable",
        "schedule": float(SWEEP_INTERVAL_SECONDS),
    },
}

# -----------------------------------------------------
# Default PK type
# -----------------------------------------------------
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# -----------------------------------------------------
# S3 / R2 / MinIO (env-driven; no hardcoded secrets)
# -----------------------------------------------------
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL") or "http://127.0.0.1:9000"  # fine for local
S3_PUBLIC_ENDPOINT = os.getenv("S3_PUBLIC_ENDPOINT", S3_ENDPOINT_URL)
S3_REGION = os.getenv("S3_REGION", "us-east-1")
S3_BUCKET = os.getenv("S3_BUCKET", "media-local")
S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY")          # set in .env for local
S3_SECRET_KEY = os.getenv("S3_SECRET_KEY")          # set in .env for local
S3_PRESIGN_EXPIRE_SECONDS = env_int("S3_PRESIGN_EXPIRE_SECONDS", 900)
S3_CONNECT_TIMEOUT = env_int("S3_CONNECT_TIMEOUT", 10)
S3_READ_TIMEOUT = env_int("S3_READ_TIMEOUT", 60)

# Published playlist URLs are built on this base, e.g. https://pub-xxxx.r2.dev
S3_PUBLIC_DOMAIN = (os.getenv("S3_PUBLIC_DOMAIN") or f"{S3_PUBLIC_ENDPOINT}/{S3_BUCKET}").rstrip("/")

# -----------------------------------------------------
# Encoder (fixed profile: predictable storage cost, never user input)
# -----------------------------------------------------
FFMPEG_BINARY = env("FFMPEG_BINARY", "ffmpeg")
FFPROBE_BINARY = env("FFPROBE_BINARY", "ffprobe")
FFMPEG_PRESET = "fast"
HLS_SEGMENT_SECONDS = 3
VIDEO_BITRATE = "800k"
VIDEO_MAXRATE = "1M"
VIDEO_BUFSIZE = "1.5M"
AUDIO_BITRATE = "128k"

SUPPORTED_SOURCE_EXTENSIONS = {".mp4", ".mov", ".mkv", ".webm", ".avi", ".m4v", ".mpeg", ".mpg"}

# -----------------------------------------------------
# Pipeline (workers, retries, leases)
# -----------------------------------------------------
PIPELINE_MAX_ATTEMPTS = env_int("PIPELINE_MAX_ATTEMPTS", 3)
PIPELINE_BACKOFF_SECONDS = env_int("PIPELINE_BACKOFF_SECONDS", 2)
PIPELINE_BACKOFF_MAX_SECONDS = env_int("PIPELINE_BACKOFF_MAX_SECONDS", 60)
TRANSCODE_TIMEOUT_SECONDS = env_int("TRANSCODE_TIMEOUT_SECONDS", 60 * 30)
UPLOAD_TIMEOUT_SECONDS = env_int("UPLOAD_TIMEOUT_SECONDS", 60 * 15)
CLAIM_LEASE_SECONDS = env_int("CLAIM_LEASE_SECONDS", 120)
CANCEL_POLL_SECONDS = env_int("CANCEL_POLL_SECONDS", 2)
WORKER_COUNT = env_int("WORKER_COUNT", 2)
WORKER_POLL_SECONDS = env_int("WORKER_POLL_SECONDS", 5)

# Worst case for one job: every attempt of both phases times out, plus backoff and
# slack for probing and downloading the source
PIPELINE_BUDGET_SECONDS = (
    PIPELINE_MAX_ATTEMPTS * (TRANSCODE_TIMEOUT_SECONDS + UPLOAD_TIMEOUT_SECONDS)
    + 2 * (PIPELINE_MAX_ATTEMPTS - 1) * PIPELINE_BACKOFF_MAX_SECONDS
    + 10 * 60
)

# The soft limit lets a task fail its job and clean up; the hard kill comes later
CELERY_TASK_SOFT_TIME_LIMIT = env_int("CELERY_TASK_SOFT_TIME_LIMIT", PIPELINE_BUDGET_SECONDS)
CELERY_TASK_TIME_LIMIT = env_int("CELERY_TASK_TIME_LIMIT", CELERY_TASK_SOFT_TIME_LIMIT + 5 * 60)
if CELERY_TASK_TIME_LIMIT <= CELERY_TASK_SOFT_TIME_LIMIT:
    raise ImproperlyConfigured("CELERY_TASK_TIME_LIMIT must be greater than CELERY_TASK_SOFT_TIME_LIMIT")

# -----------------------------------------------------
# Categories & metadata
# -----------------------------------------------------
CATEGORY_DEFAULT_LABEL = env("CATEGORY_DEFAULT_LABEL", "general")

# Dotted path to a class with suggest(filename) -> {title, description, tags}; empty = fallback only
METADATA_SUGGESTER = env("METADATA_SUGGESTER", "")

# -----------------------------------------------------
# Progress feed (in-process)
# -----------------------------------------------------
# Finished jobs keep their terminal event for late subscribers, bounded by age and count
NOTIFIER_TERMINAL_RETENTION_SECONDS = env_int("NOTIFIER_TERMINAL_RETENTION_SECONDS", 60 * 60)
NOTIFIER_MAX_TERMINAL_EVENTS = env_int("NOTIFIER_MAX_TERMINAL_EVENTS", 1000)
