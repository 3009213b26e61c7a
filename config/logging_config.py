# logging_config.py

import os
import re
import sys
import logging
import logging.handlers
from pathlib import Path
from pythonjsonlogger import jsonlogger

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = Path(os.getenv("LOG_DIR", "logs"))

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

HUMAN_FORMAT = '[%(asctime)s] %(levelname)-8s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
JSON_FORMAT = '%(timestamp)s %(level)s %(name)s %(message)s'


class SensitiveDataFilter(logging.Filter):

    SENSITIVE_KEYS = [
        'password', 'token', 'api_key', 'secret', 'authorization',
        'access_token', 'credentials', 'bearer',
        'redis_password', 'postgres_password', 'rabbitmq_password',
    ]

    PATTERNS = [
        (r'(api[_-]?key\s*[=:]\s*)[^\s&]+', r'\1***MASKED***'),
        (r'(token\s*[=:]\s*)[^\s&]+', r'\1***MASKED***'),
        (r'(password\s*[=:]\s*)[^\s&]+', r'\1***MASKED***'),
        (r'(Bearer\s+)[^\s]+', r'\1***MASKED***'),
        (r'(://[^:/\s]+:)[^@\s]+(@)', r'\1***MASKED***\2'),
    ]

    def filter(self, record):
        if hasattr(record, 'msg'):
            msg = str(record.msg)
            lower = msg.lower()
            if any(key in lower for key in self.SENSITIVE_KEYS) or '://' in msg:
                record.msg = self._mask_sensitive_data(msg)

        if hasattr(record, 'args') and record.args and isinstance(record.args, tuple):
            record.args = tuple(
                self._mask_if_sensitive(arg) for arg in record.args
            )

        return True

    def _mask_sensitive_data(self, text):
        for pattern, replacement in self.PATTERNS:
            text = re.sub(pattern, replacement, text, flags=re.IGNORECASE)
        return text

    def _mask_if_sensitive(self, value):
        if isinstance(value, str):
            return self._mask_sensitive_data(value)
        return value


class CustomJsonFormatter(jsonlogger.JsonFormatter):

    CONTEXT_FIELDS = ('service_name', 'audit_id', 'page_id', 'url', 'reason', 'task_id')

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = self.formatTime(record, self.datefmt)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno

        for field in self.CONTEXT_FIELDS:
            if hasattr(record, field):
                log_record[field] = getattr(record, field)

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)


def _formatter() -> logging.Formatter:
    if ENVIRONMENT == "production":
        return CustomJsonFormatter(JSON_FORMAT)
    return logging.Formatter(HUMAN_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')


def setup_logging(service_name="audit_worker", log_to_files: bool = True):

    logger = logging.getLogger()
    logger.setLevel(LOG_LEVEL)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    sensitive_filter = SensitiveDataFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(LOG_LEVEL)
    console_handler.setFormatter(_formatter())
    console_handler.addFilter(sensitive_filter)
    logger.addHandler(console_handler)

    if log_to_files:
        LOG_DIR.mkdir(exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            LOG_DIR / f"{service_name}.log",
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        file_handler.setLevel(LOG_LEVEL)
        file_handler.setFormatter(_formatter())
        file_handler.addFilter(sensitive_filter)
        logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            LOG_DIR / f"{service_name}_error.log",
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(_formatter())
        error_handler.addFilter(sensitive_filter)
        logger.addHandler(error_handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)
    logging.getLogger("kombu").setLevel(logging.WARNING)
    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("playwright").setLevel(logging.WARNING)

    return logger


def get_logger(name, service_name=None):
    logger = logging.getLogger(name)

    if service_name:
        logger = logging.LoggerAdapter(logger, {'service_name': service_name})

    return logger


def setup_celery_logging():
    from celery.signals import after_setup_logger, after_setup_task_logger

    @after_setup_logger.connect
    def setup_loggers(logger, *args, **kwargs):
        for handler in logger.handlers:
            handler.addFilter(SensitiveDataFilter())

    @after_setup_task_logger.connect
    def setup_task_loggers(logger, *args, **kwargs):
        for handler in logger.handlers:
            handler.addFilter(SensitiveDataFilter())


class CrawlEventLogger:

    def __init__(self):
        self.logger = get_logger('audit_worker.events')

    def log_audit_created(self, audit_id, root_url, industry):
        self.logger.info(
            f"Audit created: {audit_id}",
            extra={'audit_id': audit_id, 'url': root_url, 'industry': industry}
        )

    def log_precheck_failed(self, audit_id, root_url, reason):
        self.logger.warning(
            f"Precheck failed: {root_url}",
            extra={'audit_id': audit_id, 'url': root_url, 'reason': reason}
        )

    def log_discovery_finished(self, audit_id, source, urls_count, inserted):
        self.logger.info(
            f"Discovery finished: {audit_id} via {source}",
            extra={'audit_id': audit_id, 'source': source, 'urls_count': urls_count, 'inserted': inserted}
        )

    def log_batch_pass(self, audit_id, analyzed, discovered, elapsed_ms, pass_no):
        self.logger.info(
            f"Batch pass {pass_no}: {audit_id} pages={analyzed}/{discovered} elapsed={elapsed_ms}ms",
            extra={
                'audit_id': audit_id,
                'pages_analyzed': analyzed,
                'pages_discovered': discovered,
                'elapsed_ms': elapsed_ms,
                'pass_no': pass_no,
            }
        )

    def log_page_skipped(self, audit_id, url, reason):
        self.logger.info(
            f"Page skipped: {url} ({reason})",
            extra={'audit_id': audit_id, 'url': url, 'reason': reason}
        )

    def log_audit_finalized(self, audit_id, reason, aeo, geo, avg_gap):
        self.logger.info(
            f"Audit finalized: {audit_id} ({reason})",
            extra={'audit_id': audit_id, 'reason': reason, 'aeo_score': aeo, 'geo_score': geo, 'avg_render_gap': avg_gap}
        )

    def log_audit_failed(self, audit_id, reason):
        self.logger.error(
            f"Audit failed: {audit_id} ({reason})",
            extra={'audit_id': audit_id, 'reason': reason}
        )

    def log_stuck_sweep(self, checked, finalized, failed):
        self.logger.info(
            f"Stuck audit sweep: checked={checked} finalized={finalized} failed={failed}",
            extra={'checked': checked, 'finalized': finalized, 'failed': failed}
        )


crawl_events = CrawlEventLogger()
