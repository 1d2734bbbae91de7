"""
Create the local store tables and register environments.

Usage:
    python scripts/init_db.py [environments.json]

environments.json holds a list of
    {"id": ..., "name": ..., "base_url": ..., "username": ...}
"""

import asyncio
import json
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import create_engine, create_session_maker, init_models
from core.exceptions import EnvironmentNotFoundError
from core.logging import setup_logging
from engine.store import JobStore

logger = logging.getLogger(__name__)


async def init_database(environments_file: str = None):
    logger.info("Connecting to local store...")
    engine = create_engine()
    await init_models(engine)

    if environments_file:
        store = JobStore(create_session_maker(engine))
        with open(environments_file) as f:
            environments = json.load(f)

        for env in environments:
            try:
                await store.get_environment(env["id"])
                logger.info(f"Environment {env['id']} already registered")
                continue
            except EnvironmentNotFoundError:
                pass

            await store.add_environment(
                name=env["name"],
                base_url=env["base_url"],
                username=env["username"],
                environment_id=env["id"],
                insert_concurrency=env.get("insert_concurrency", 50),
                query_concurrency=env.get("query_concurrency", 5),
            )
            logger.info(f"Registered environment {env['id']} ({env['name']})")

    await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database(sys.argv[1] if len(sys.argv) > 1 else None))
