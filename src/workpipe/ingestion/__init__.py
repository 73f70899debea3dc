"""Order ingestion."""

from workpipe.ingestion.service import OrderIngestionService, build_records

__all__ = ["OrderIngestionService", "build_records"]
