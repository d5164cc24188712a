"""CodeQL security dashboard backend.

Aggregates code-scanning results for a fleet of repositories, serves them
over a REST API, and orchestrates remote CodeQL scans: dispatch, poll for
completion, and re-ingest.
"""

__version__ = "1.0.0"
