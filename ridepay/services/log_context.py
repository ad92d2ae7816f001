from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
import logging
from typing import Iterator

RequestContext = dict[str, str]

_request_context: ContextVar[RequestContext] = ContextVar("request_context", default={})


def set_request_context(context: RequestContext) -> Token:
    return _request_context.set(context)


def reset_request_context(token: Token) -> None:
    _request_context.reset(token)


def get_request_context() -> RequestContext:
    return _request_context.get()


@contextmanager
def bind_request_context(**values: str) -> Iterator[RequestContext]:
    context = {**get_request_context(), **{key: str(value) for key, value in values.items()}}
    token = set_request_context(context)
    try:
        yield context
    finally:
        reset_request_context(token)


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        context = get_request_context()
        record.request_context = (
            " ".join(f"{key}={value}" for key, value in sorted(context.items())) if context else "-"
        )
        return True
