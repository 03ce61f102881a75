"""
Runtime settings, read from FLASHQUEUE_* environment variables.
"""

import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field

ENV_PREFIX = "FLASHQUEUE_"
DEFAULT_DB_PATH = Path(__file__).parent / "flashcards.db"


class Settings(BaseModel):
    database_url: str = f"sqlite:///{DEFAULT_DB_PATH}"
    # weight(box 0) / weight(box 5) for the adaptive draw
    weight_ratio: float = Field(10.0, gt=1.0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """Build settings from the environment; unset variables keep their defaults."""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in environ:
                values[name] = environ[key]
        return cls(**values)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
