"""
Dataflow Errors

Failure taxonomy shared by the ingestion, aggregation and sink stages.

- FeedConnectionError: feed unreachable (retried by the reconnect policy)
- DecodeError:         a single malformed feed message (skipped)
- StreamClosed:        remote side closed the stream (reconnect)
- SinkError:           persistence/broadcast failure for a bar (logged)
- BufferClosed:        ingest buffer shut down
"""


class DataflowError(Exception):
    """Base class for pipeline errors"""


class FeedConnectionError(DataflowError, ConnectionError):
    """Raised when the trade feed cannot be reached"""


class DecodeError(DataflowError, ValueError):
    """Raised when a feed message cannot be decoded into a Trade"""

    def __init__(self, message: str, raw: object = None):
        super().__init__(message)
        self.raw = raw


class StreamClosed(DataflowError):
    """Raised when the feed connection is closed by the remote side"""


class SinkError(DataflowError):
    """Raised when a bar could not be delivered to one or more targets"""

    def __init__(self, message: str, failed_targets: list[str] | None = None):
        super().__init__(message)
        self.failed_targets = failed_targets or []


class BufferClosed(DataflowError):
    """Raised on push to a closed buffer, or pop from a closed and drained one"""
