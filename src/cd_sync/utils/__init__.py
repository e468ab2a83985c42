# ABOUTME: Utilities package initialization for the cd-sync engine
# ABOUTME: Contains shared logging, audit, merge-patch and safety helpers

"""
cd-sync Utilities Package

Shared utilities:
    - logging.py: Structured logging with correlation IDs and audit trail
    - merge.py: JSON merge patch and canonical JSON comparison
    - safety.py: Rate limiting and guards for admin operations
"""
