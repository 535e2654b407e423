from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

from raffle.config import RaffleSettings, load_from_environment


@dataclass(frozen=True)
class FlaskSettings:
    secret_key: str = "chainraffle-dev-secret"
    debug: bool = True


@dataclass(frozen=True)
class AppSettings:
    flask: FlaskSettings
    raffle: RaffleSettings
    database_url: str
    oracle_api_key: Optional[str]


@lru_cache(maxsize=1)
def load_settings(dotenv_path: Optional[str] = None) -> AppSettings:
    if dotenv_path:
        load_dotenv(dotenv_path)
    else:
        load_dotenv()

    flask_settings = FlaskSettings(
        secret_key=os.getenv("FLASK_SECRET_KEY", "chainraffle-dev-secret"),
        debug=os.getenv("FLASK_DEBUG", "1") == "1",
    )

    database_url = os.getenv("DATABASE_URL", "sqlite:///chainraffle.db")
    oracle_api_key = os.getenv("ORACLE_API_KEY")

    return AppSettings(
        flask=flask_settings,
        raffle=load_from_environment(),
        database_url=database_url,
        oracle_api_key=oracle_api_key,
    )
