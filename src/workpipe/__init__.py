"""
workpipe: ordered work-item pipeline.

Orders are accepted idempotently, stored with their items as PENDING, and
fanned out one message per item onto a partition-ordered work queue.
Items that keep failing are redriven to a dead-letter queue and marked
FAILED for manual review.

Subpackages:
    common      - queue, work store, idempotency guard, metrics, health
    schemas     - pydantic models for the wire format and stored records
    ingestion   - order intake
    processing  - item processor and simulated unit of work
    dlq         - dead-letter handler
    runners     - pipeline wiring used by ``python -m workpipe``
"""

__version__ = "0.1.0"
