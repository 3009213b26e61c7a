from prometheus_client import Counter, Histogram

precheck_outcomes_total = Counter(
    'audit_precheck_outcomes_total',
    'Domain precheck results',
    ['outcome']
)

precheck_retries_total = Counter(
    'audit_precheck_retries_total',
    'Precheck fetches retried after a transient status',
    ['status_code']
)

pages_processed_total = Counter(
    'audit_pages_processed_total',
    'Frontier pages handled by batch passes',
    ['outcome']
)

browser_renders_total = Counter(
    'audit_browser_renders_total',
    'Browser render attempts for SPA-like pages',
    ['outcome']
)

organic_links_inserted_total = Counter(
    'audit_organic_links_inserted_total',
    'URLs added to the frontier from fetched pages'
)

audits_finalized_total = Counter(
    'audit_audits_finalized_total',
    'Audits moved to completed',
    ['reason']
)

audits_failed_total = Counter(
    'audit_audits_failed_total',
    'Audits moved to failed',
    ['reason']
)

batch_pass_duration = Histogram(
    'audit_batch_pass_duration_seconds',
    'Wall time of one batch continuation pass',
    buckets=(1, 2.5, 5, 10, 15, 20, 25, 30, 60)
)

discovery_duration = Histogram(
    'audit_discovery_duration_seconds',
    'Wall time of URL discovery',
    ['source']
)
