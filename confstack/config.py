# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session, SQLModel

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONFSTACK_", env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./confstack.db"

    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"
    # per-parent locks and schedule tokens of the celery scheduler
    redis_url: str = "redis://localhost:6379/2"

    # local or celery
    scheduler_type: str = "local"

    parent_api_version: str = "stacks.confstack.io/v1alpha1"
    parent_kind: str = "ConfigurationStack"
    resource_path: str = "resources"

    # seconds
    reconcile_timeout: float = 60.0
    short_wait: float = 30.0
    long_wait: float = 180.0
    resync_interval: float = 300.0
    lock_expire_margin: float = 10.0
    lock_retry_countdown: float = 1.0

    log_level: str = "INFO"


settings = Settings()


def get_sync_database_url():
    """Convert an async database URL to its sync driver equivalent"""
    url = settings.database_url
    if url.startswith("postgresql+asyncpg://"):
        return url.replace("postgresql+asyncpg://", "postgresql://")
    elif url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite+aiosqlite://", "sqlite://")
    return url


engine = create_engine(get_sync_database_url())
SyncSessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def init_db(bind=None):
    """Create the resource tables"""
    # registers the table on SQLModel.metadata
    from confstack.db import models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def setup_logging(level: str = None):
    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)
