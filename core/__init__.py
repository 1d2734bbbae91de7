"""
Core utilities and configuration for the record migration engine.

This package provides foundational components used throughout the engine:

Modules:
    config: Application configuration and environment variable management
    database: Local store engine and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import create_engine, create_session_maker, init_models
    from core.exceptions import ValidationError, SequenceError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Prepare the local store
    engine = create_engine()
    await init_models(engine)
"""

__all__ = [
    "settings",
    "create_engine",
    "create_session_maker",
    "init_models",
    "setup_logging",
    # Exceptions
    "MigrationException",
    "ValidationError",
    "SequenceError",
    "TransformError",
    "LoadError",
    "TransientLoadError",
    "PermanentLoadError",
    "ClientError",
    "TransientClientError",
    "PermanentClientError",
    "AuthenticationError",
    "JobNotFoundError",
    "JobStateError",
    "EnvironmentNotFoundError",
    "MissingCredentialsError",
    "StoreError",
    "RetryableError",
    "NonRetryableError",
]
