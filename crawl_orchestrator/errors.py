"""Error taxonomy for crawl orchestration.

Admission errors are expected filtering outcomes and are never retried.
Extraction and quota errors end a task without retry. Fetch errors carry a
``retryable`` flag. ``StoreUnavailable`` means the shared store could not be
reached and must never be read as "not seen".
"""


class CrawlerError(Exception):
    code = "CRAWLER_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(f"{self.code}: {message}")
        self.detail = message


class AdmissionError(CrawlerError):
    code = "ADMISSION_REJECTED"
    reason = "admission"


class DuplicateUrl(AdmissionError):
    code = "URL_ALREADY_CRAWLED"
    reason = "duplicate"


class InvalidUrlFormat(AdmissionError):
    code = "INVALID_URL_FORMAT"
    reason = "invalid_url"


class DomainNotAllowed(AdmissionError):
    code = "DOMAIN_NOT_ALLOWED"
    reason = "domain"


class RobotsDenied(AdmissionError):
    code = "DENIED_BY_ROBOTS_TXT"
    reason = "robots"


class ExtractionVerificationFailed(CrawlerError):
    code = "EXTRACTED_CONTENT_FAILED_VERIFICATION"


class FetchError(CrawlerError):
    code = "FETCH_FAILED"

    def __init__(
        self, message: str, *, status: int | None = None, retryable: bool = True
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class QuotaExceeded(CrawlerError):
    code = "QUOTA_EXCEEDED"

    def __init__(self, message: str, *, inserted: bool = False) -> None:
        super().__init__(message)
        self.inserted = inserted


class StoreUnavailable(CrawlerError):
    code = "STORE_UNAVAILABLE"


class JobNotFound(CrawlerError):
    code = "JOB_NOT_FOUND"


class InvalidTransition(CrawlerError):
    code = "INVALID_TRANSITION"
