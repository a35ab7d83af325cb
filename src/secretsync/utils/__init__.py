# ABOUTME: Utilities package initialization for secretsync
# ABOUTME: Contains shared utilities for the GitHub client, safety, and logging

"""
secretsync Utilities Package

Shared utilities:
    - client.py: GitHub API client wrapper with retry logic
    - safety.py: Read-only mode, rate limiting, and owner allowlist
    - logging.py: Structured logging with correlation IDs
"""
