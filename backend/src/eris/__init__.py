"""ERIS - Enforcement Record Ingestion System.

Ingests enforcement records (court cases and notices) published by UK
regulators, reconciles each record against the canonical offender registry
and routes ambiguous identity matches to a human review queue.
"""

__version__ = "0.1.0"
