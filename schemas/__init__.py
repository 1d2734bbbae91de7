"""
Pydantic schemas for job specs, column mappings and API payloads.

Schemas:
    mapping: Column mapping entries, transform kinds and submission validation
    api: API endpoint request/response schemas

Usage:
    from schemas.mapping import JobSpec, MappingEntry, TransformKind
    from schemas.api import JobSummary, JobDetail

Example:
    spec = JobSpec(
        name="Contacts",
        source_environment_id="prod",
        dest_environment_id="staging",
        source_entity="Contact",
        dest_entity="Contact",
        mapping=[MappingEntry(source_field="Email", dest_field="Email")]
    )
"""

__all__ = [
    "JobSpec",
    "MappingEntry",
    "TransformKind",
    "validate_mapping",
    "CreateJobRequest",
    "CreateJobResponse",
    "RetryResponse",
    "JobSummary",
    "JobDetail",
    "RunInfo",
    "RowOutcomeInfo",
    "RowOutcomePage",
    "HealthCheckResponse",
]
