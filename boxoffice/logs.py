"""Logging setup (loguru)."""

import sys

from loguru import logger as loguru_logger

from .config import LOG_LEVEL


SECURITY = 'security'
COMPONENT = 'component'

log_format = ' | '.join(
    (
        '<lk>{time:YYYY-MM-DD HH:mm:ss.SSS}</>',
        '<lvl>{level:<8}</>',
        f'<lg>{{extra[{COMPONENT}]}}</> <c>{{name}}:{{function}}:{{line}}</>',
        '{message}',
    )
)

loguru_logger.remove()
loguru_logger.configure(extra={COMPONENT: '', SECURITY: False})
logger = loguru_logger
logger.add(sys.stderr, format=log_format, level=LOG_LEVEL)


def get_logger(component: str):
    return logger.bind(**{COMPONENT: component})


def security_logger(component: str):
    return logger.bind(**{COMPONENT: component, SECURITY: True})
