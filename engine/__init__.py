"""
Migration job execution engine.

Streams rows of a source entity through a column mapping into a
destination entity, tracking every row outcome so failures can be
inspected and retried.

Modules:
    client: EnvironmentClient interface (paged read, single-row write)
    http_client: httpx implementation of EnvironmentClient
    credentials: In-memory environment passwords
    extractor: RowExtractor (paged, lazy source rows)
    transformer: transform_row (pure mapping application)
    loader: RowLoader (single-row writes, transient retry)
    retry: RetryCoordinator (retry batch bookkeeping)
    progress: ProgressTracker (counters, rate, percent)
    store: JobStore (local persistence)
    pipeline: PipelineRun (one run of a job)
    scheduler: JobScheduler (lifecycle, single active job)

Usage:
    from engine.scheduler import JobScheduler
    from engine.store import JobStore

    scheduler = JobScheduler(JobStore(session_maker), client_factory)
    await scheduler.recover()
    scheduler.start()
    job_id = await scheduler.submit(spec)
"""

__all__ = [
    "JobScheduler",
    "JobStore",
    "PipelineRun",
    "PipelineOptions",
    "RowExtractor",
    "RowLoader",
    "LoadResult",
    "RetryCoordinator",
    "ProgressTracker",
    "transform_row",
]
