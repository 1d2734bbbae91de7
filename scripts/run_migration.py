"""
Run one migration job from a JSON job spec and wait for it to finish.

Usage:
    python scripts/run_migration.py job.json

Passwords are read from MIGRATION_PASSWORD_<ENVIRONMENT_ID> environment
variables (upper-cased, dashes replaced by underscores).
"""

import asyncio
import json
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import create_engine, create_session_maker, init_models
from core.exceptions import MigrationException
from core.logging import setup_logging
from engine.credentials import InMemoryCredentials
from engine.http_client import http_client_factory
from engine.scheduler import JobScheduler
from engine.store import JobStore

logger = logging.getLogger(__name__)


def password_variable(environment_id: str) -> str:
    return "MIGRATION_PASSWORD_" + environment_id.upper().replace("-", "_")


async def run_migration(spec_file: str) -> int:
    """Run the job; exit status 0 when every row migrated"""
    with open(spec_file) as f:
        spec = json.load(f)

    credentials = InMemoryCredentials()
    for env_id in {spec["source_environment_id"], spec["dest_environment_id"]}:
        password = os.environ.get(password_variable(env_id))
        if password:
            credentials.set_password(env_id, password)

    engine = create_engine()
    await init_models(engine)
    scheduler = JobScheduler(JobStore(create_session_maker(engine)), http_client_factory(credentials))
    await scheduler.recover()
    scheduler.start()

    try:
        job_id = await scheduler.submit(spec)
        job = await scheduler.wait(job_id)
        logger.info(
            f"Job {job_id}: {job.status.value} - "
            f"Processed: {job.processed_rows}, Succeeded: {job.successful_rows}, "
            f"Failed: {job.failed_row_count}"
        )
        if job.error_message:
            logger.error(f"Job error: {job.error_message}")
        return 0 if job.status.value == "completed" else 1

    except MigrationException as e:
        logger.error(f"Migration failed: {e}")
        return 2

    finally:
        await scheduler.shutdown()
        await engine.dispose()


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python scripts/run_migration.py job.json")
        sys.exit(2)
    setup_logging()
    sys.exit(asyncio.run(run_migration(sys.argv[1])))
