from __future__ import annotations


class PhotoCrawlerError(Exception):
    """Base exception for photo-crawler errors."""


class ConfigError(PhotoCrawlerError):
    """Config file missing, unreadable or invalid."""


class ImageDecodeError(PhotoCrawlerError):
    """Image bytes could not be decoded."""


class ClassificationError(PhotoCrawlerError):
    """On-device text recognition failed or is unavailable."""


class ExtractionError(PhotoCrawlerError):
    """The extraction capability returned something unusable."""


class InvalidResponseError(ExtractionError):
    def __init__(self, detail: str):
        super().__init__(f"Invalid JSON response: {detail}")
        self.detail = detail


class NoContentError(ExtractionError):
    def __init__(self, detail: str = "No content extracted"):
        super().__init__(detail)


class TransportError(PhotoCrawlerError):
    """Network failure talking to the extraction API."""


class APIError(TransportError):
    def __init__(self, status_code: int, message: str = ""):
        text = f"API error ({status_code}): {message}" if message else f"HTTP error: {status_code}"
        super().__init__(text)
        self.status_code = status_code
        self.message = message


class WriteError(PhotoCrawlerError):
    """Writing a note into the vault failed."""


class WriteCoordinationError(WriteError):
    def __init__(self, path: str, detail: str):
        super().__init__(f"File coordination failed for {path}: {detail}")
        self.path = path


class WriteFSError(WriteError):
    def __init__(self, path: str, detail: str):
        super().__init__(f"Write failed for {path}: {detail}")
        self.path = path


class StateStoreError(PhotoCrawlerError):
    """Persisted state could not be read or written."""


class StateDecodeError(StateStoreError):
    pass


class PhotoSourceError(PhotoCrawlerError):
    """The photo source could not be enumerated."""
