# ABOUTME: Utilities package initialization for the GitOps reconciler
# ABOUTME: Contains shared utilities for clients, safety, and logging

"""
GitOps Reconciler Utilities Package

Shared utilities:
    - client.py: Source and target API clients with retry logic
    - safety.py: Operator guards, prune confirmation and manifest masking
    - logging.py: Structured logging with correlation IDs and audit trail
"""
