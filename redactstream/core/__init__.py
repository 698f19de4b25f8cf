"""redactstream core pipeline components.

This package contains the pipeline record types, the five pipeline stages
(discovery, chunked reading, redaction, windowed grouping, dynamic writing),
the observability sink and the orchestrator that runs them concurrently.
"""
