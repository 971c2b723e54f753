"""
Background job processing.

This package provides the job system with:
- Database-backed queue ordered by priority and schedule
- Registry-based pluggable handlers with per-call timeouts
- Duplicate suppression keyed on job type and payload
- Exponential retry backoff and stuck-job recovery
- Tick-level exclusion through an advisory lock
"""
