# backend/volumetric_settings.py

"""
Environment-driven settings for the volumetric weight engine.

Values are read from the process environment, after loading an optional
.env file next to this module:

    VOLUMETRIC_DEFAULT_PRECISION  - fractional digits when precision is omitted (default 2)
    VOLUMETRIC_LOG_LEVEL          - level used by configure_logging() (default INFO)
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from pydantic import BaseModel, Field
import logging
import os

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

DEFAULT_PRECISION = 2
DEFAULT_LOG_LEVEL = "INFO"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class Settings(BaseModel):
    """Resolved engine settings"""
    default_precision: int = Field(default=DEFAULT_PRECISION, ge=0)
    log_level: str = DEFAULT_LOG_LEVEL


def _read_precision(raw: Optional[str]) -> int:
    if raw is None or raw.strip() == "":
        return DEFAULT_PRECISION
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid VOLUMETRIC_DEFAULT_PRECISION {raw!r}, using {DEFAULT_PRECISION}")
        return DEFAULT_PRECISION
    if value < 0:
        logger.warning(f"Negative VOLUMETRIC_DEFAULT_PRECISION {raw!r}, using {DEFAULT_PRECISION}")
        return DEFAULT_PRECISION
    return value


def _read_log_level(raw: Optional[str]) -> str:
    if not raw:
        return DEFAULT_LOG_LEVEL
    level = raw.strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        logger.warning(f"Invalid VOLUMETRIC_LOG_LEVEL {raw!r}, using {DEFAULT_LOG_LEVEL}")
        return DEFAULT_LOG_LEVEL
    return level


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings from the environment (cached; call get_settings.cache_clear() to reload)"""
    return Settings(
        default_precision=_read_precision(os.environ.get('VOLUMETRIC_DEFAULT_PRECISION')),
        log_level=_read_log_level(os.environ.get('VOLUMETRIC_LOG_LEVEL'))
    )


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for applications embedding the engine"""
    logging.basicConfig(
        level=level or get_settings().log_level,
        format=LOG_FORMAT
    )
