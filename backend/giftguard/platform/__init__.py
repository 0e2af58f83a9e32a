"""Cross-cutting platform services: errors, audit logging, detached tasks."""
