import re


class AuditError(Exception):
    pass


class AuditNotFound(AuditError):
    def __init__(self, detail: str = "audit_not_found"):
        super().__init__(detail)
        self.detail = detail


class RetryableStatus(AuditError):
    def __init__(self, status_code: int, retry_after: float | None = None):
        super().__init__(f"retryable_http_{status_code}")
        self.status_code = status_code
        self.retry_after = retry_after


class DiscoveryError(AuditError):
    pass


class FailReason:
    NON_CONTENT_PLATFORM = "non_content_platform"
    EMPTY_OR_ERROR_PAGE = "domain_error_or_empty_page"
    LOCALE_UNRESOLVED = "precheck_locale_unresolved"
    PRECHECK_ERROR = "precheck_error"
    DISCOVER_ERROR = "discover_error"
    NO_CRAWLABLE_PAGES = "no_crawlable_pages_found"
    NO_PAGES_AFTER_10MIN = "timeout_no_pages_after_10min"
    ADMIN_FAIL = "admin_fail"

    @staticmethod
    def precheck_http(status_code: int) -> str:
        return f"precheck_failed_http_{status_code}"

    @staticmethod
    def timeout_insufficient_pages(analyzed: int) -> str:
        return f"timeout_insufficient_pages_{analyzed}"

    @staticmethod
    def family(reason: str) -> str:
        """Reason without embedded counts/status codes, for metric labels."""
        head = reason.split(":", 1)[0].strip()
        return re.sub(r"_\d+$", "", head)
