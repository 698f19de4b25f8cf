"""redactstream — streaming de-identification of object-storage text files.

New files matching an input pattern are read in fixed-size chunks, each chunk
is de-identified by a redaction backend (Google Cloud DLP by default), and the
redacted chunks are regrouped per source file and time window before being
written back to object storage.
"""

__version__ = "1.0.0"
