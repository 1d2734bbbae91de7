"""
In-memory environment passwords.

Passwords are never persisted by the engine; whoever owns the credential
dialog pushes them here for the lifetime of the process.
"""

from typing import Dict, Optional
import logging

logger = logging.getLogger(__name__)


class InMemoryCredentials:
    """Password lookup by environment id"""

    def __init__(self, passwords: Optional[Dict[str, str]] = None):
        self._passwords: Dict[str, str] = dict(passwords or {})

    def set_password(self, environment_id: str, password: str):
        self._passwords[environment_id] = password
        logger.debug(f"Password set for environment {environment_id}")

    def get_password(self, environment_id: str) -> Optional[str]:
        return self._passwords.get(environment_id)
