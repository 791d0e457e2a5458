"""Small binaries shipped to cells and run inside containers.

- davtool: PUT or DELETE a file on a WebDAV blob store
- s3uploader, s3downloader, s3deleter: move one object to or from S3
- tee2metron: run a command and forward its output to the log bus agent
"""

from lattice.cell_helpers.console import HELPER_CONTEXT_SETTINGS, configure_logging, die, failure_reason

__all__ = [
    "HELPER_CONTEXT_SETTINGS",
    "configure_logging",
    "die",
    "failure_reason",
]
