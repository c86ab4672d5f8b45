"""
Import pipeline components for Apple Health export archives.

Modules:
    claims: Compare-and-swap claim protocol and status transitions
    runner: Per-import pipeline (download, parse, write, complete or fail)
    scheduler: APScheduler poll loop that drains the import queue
    notifier: Best-effort downstream scorecard trigger

Subpackages:
    extractors: Archive retrieval, container scanning, streaming XML parse
    transformers: Allow-list mapping, sleep day buckets, blood pressure pairing
    loaders: Metric catalog and idempotent metric writer

Architecture:
    Data flows strictly forward:

    1. Retrieve - stream the uploaded zip to a scratch file
    2. Locate - find export.xml inside the container without extracting
    3. Extract - stream Record elements, route allow-listed kinds into lanes
    4. Aggregate - day-bucket sleep, pair blood pressure readings
    5. Load - INSERT ... ON CONFLICT DO NOTHING in batches

Usage:
    from ingestion.scheduler import ClaimScheduler

    scheduler = ClaimScheduler()
    await scheduler.check_connectivity()
    scheduler.start()

Error Handling:
    All components raise exceptions from core.exceptions. Anything raised
    while processing a claimed import marks that import failed.
"""
