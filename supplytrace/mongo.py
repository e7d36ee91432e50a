# supplytrace/mongo.py
from __future__ import annotations

import logging
from typing import Optional

from pymongo import MongoClient
from pymongo.database import Database

from supplytrace.app_config import CoreConfig, load_config

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
_db: Optional[Database] = None

# Prevent spamming logs on every call
_WARNED = False


def init_mongo(config: Optional[CoreConfig] = None) -> Optional[Database]:
    """
    Create the process-wide MongoClient.
    Leaves Mongo uninitialised (returns None) when disabled or unreachable,
    so callers can fall back to the in-memory stores.
    """
    global _client, _db

    config = config or load_config()
    if config.disable_mongo:
        logger.info("Mongo disabled by DISABLE_MONGO=1")
        return None

    if not config.mongo_uri:
        logger.warning("MONGO_URI not set. Mongo will not be initialized.")
        return None

    try:
        _client = MongoClient(config.mongo_uri, serverSelectionTimeoutMS=5000)
        _db = _client[config.mongo_db_name]
        logger.info("Mongo initialized (db=%s)", config.mongo_db_name)
    except Exception as e:
        logger.warning("Mongo init failed: %s", e)
        _client, _db = None, None

    return _db


def get_db() -> Optional[Database]:
    """
    Returns the database if initialised, else None.
    Safe to call anywhere (won't crash at import time).
    """
    global _WARNED

    if _db is None and not _WARNED:
        _WARNED = True
        logger.warning("Mongo is not initialized (call init_mongo first).")
    return _db


def get_col(name: str):
    """
    Convenience helper:
      col = get_col("transfer_records")
      if col is None: handle fallback
    """
    db = get_db()
    if db is None:
        return None
    return db[name]


def close_mongo() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client, _db = None, None
