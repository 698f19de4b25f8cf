"""Storage services used by the pipeline (local filesystem and Amazon S3)."""
