import asyncio
import logging

import pytest

from netssh.context import context_log, context_with_log


def test_context_log_defaults_to_discarding_logger():
    log = context_log()
    assert not log.propagate
    assert all(isinstance(h, logging.NullHandler) for h in log.handlers)


def test_explicit_logger_wins():
    explicit = logging.getLogger("test.explicit")
    ambient = logging.getLogger("test.ambient")
    with context_with_log(ambient):
        assert context_log(explicit) is explicit
        assert context_log() is ambient
    assert context_log() is not ambient


@pytest.mark.asyncio
async def test_context_logger_is_inherited_by_tasks():
    ambient = logging.getLogger("test.task")

    async def child():
        return context_log()

    with context_with_log(ambient):
        task = asyncio.create_task(child())
    assert await task is ambient
