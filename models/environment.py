from sqlalchemy import Column, String, Integer, DateTime, Boolean
from datetime import datetime
from models.base import Base


class Environment(Base):
    """
    One configured instance of the external CRM platform.

    Owned by the environment-management collaborator; the engine only
    reads it by id. Immutable once created except for has_password.
    """
    __tablename__ = "environments"

    id = Column(String(36), primary_key=True)
    name = Column(String(200), nullable=False)
    base_url = Column(String(2048), nullable=False)
    username = Column(String(200), nullable=False)
    has_password = Column(Boolean, nullable=False, default=False)

    # Concurrency hints for migration jobs
    query_concurrency = Column(Integer, nullable=False, default=5)
    insert_concurrency = Column(Integer, nullable=False, default=50)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
