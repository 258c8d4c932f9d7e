"""
Dataset engine - versioned, schema-governed datasets of evaluation items.

A dataset is a named collection of items whose fields follow a schema.
Items are written in place and versions are cheap: every row carries the
version number that added it (add_vn) and the one that archived it
(del_vn), so a version sees exactly the rows live at its number. A
background snapshot job then copies those rows into per-version
snapshots.

Architecture:
    service/   dataset, schema, item, version, snapshot and import logic
    repo/      SQLite persistence of datasets, schemas, items, versions, jobs
    kv/        item counters, barrier records and renewable locks (Redis)
    storage/   tiered payload storage (row, Redis, S3)
    jobs/      job-run messages over Kafka and the worker loop
    fileio/    file systems and CSV/JSONL/Parquet readers

Invariants:
    - del_vn > add_vn for every archived row
    - A version number is never reused
    - Item counters never go negative and are refunded on failed writes
    - Conflicting dataset operations are serialized by the barrier

How to change safely:
    - Item rows are never rewritten across versions; archive and re-insert
    - Job handlers must stay idempotent; job messages are at-least-once
"""

from ._version import __version__

__all__ = ["__version__"]
