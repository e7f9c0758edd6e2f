import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

log = logging.getLogger(__name__)

SUBTASK_STAGE_POLICIES = ("inherit", "copy")


def database_url() -> str:
    """DATABASE_URL, or a PostgreSQL URL assembled from the DB_* variables"""
    url = os.getenv("DATABASE_URL")
    if not url:
        url = "postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}".format(
            user=os.getenv("DB_USER", "pfs_user"),
            password=os.getenv("DB_PASSWORD", ""),
            host=os.getenv("DB_HOST", "localhost"),
            port=os.getenv("DB_PORT", "5432"),
            name=os.getenv("DB_DATABASE", "pfs_automation"),
        )
    elif url.startswith("postgresql://"):
        # Ensure the URL has the correct async driver
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def allowed_origins() -> list[str]:
    origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000")
    if origins == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


def subtask_stage_policy() -> str:
    """How a subtask's own stage_id is maintained: 'inherit' or 'copy'"""
    policy = os.getenv("SUBTASK_STAGE_POLICY", "inherit").strip().lower()
    if policy not in SUBTASK_STAGE_POLICIES:
        log.warning("Unknown SUBTASK_STAGE_POLICY %r, falling back to 'inherit'", policy)
        return "inherit"
    return policy


def configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
