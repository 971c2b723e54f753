"""genqueue - background job queue and generation task engine."""

__version__ = "1.0.0"
