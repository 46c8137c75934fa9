from mastersteam.batch.processor import BatchProcessor

__all__ = ["BatchProcessor"]
