"""Research → Plan → Implement pipeline for turning GitHub issues into pull requests.

This package implements the pipeline orchestration controller:
- GitHub webhook parsing and trigger classification
- Pipeline run state machine with PostgreSQL persistence
- Commit strategy resolution for reviewer-issued reruns
- Atomic per-stage artifact management and invalidation
- Agent CLI execution for each stage
- Review (pull request) creation and update
- Scheduled cleanup of retained artifacts
"""
