"""
PDP Core Package
================
Electronic-document submission and signing pipeline.

Provides:
- SigningProvider abstraction (HSM simulator, remote HSM) with encrypted key storage
- Submission records with claim-guarded state transitions (SQLite default)
- Dispatch / reconciliation pipeline towards a PDP endpoint (HTTP or simulated)
"""

__version__ = "0.3.0"
