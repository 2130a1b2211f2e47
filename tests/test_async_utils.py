"""Tests for wiki_daemon.core.async_utils: worker-thread bridging."""

import asyncio
import hashlib
import logging
import threading
import time

import pytest

import wiki_daemon.core.async_utils as mod
from wiki_daemon.core.async_utils import (
    init_semaphore,
    run_sync,
    run_sync_limited,
)

# -------------------------------------------------------------------------
# run_sync
# -------------------------------------------------------------------------


class TestRunSync:
    async def test_returns_result_of_blocking_call(self, tmp_path):
        target = tmp_path / "page.md"
        target.write_bytes(b"# Page\n")

        digest = await run_sync(
            lambda p: hashlib.sha256(p.read_bytes()).hexdigest(), target
        )

        assert digest == hashlib.sha256(b"# Page\n").hexdigest()

    async def test_keyword_arguments_forwarded(self, tmp_path):
        target = tmp_path / "notes.txt"

        await run_sync(target.write_text, "draft", encoding="utf-8")

        assert target.read_text(encoding="utf-8") == "draft"

    async def test_executes_off_the_loop_thread(self):
        loop_thread = threading.get_ident()

        assert await run_sync(threading.get_ident) != loop_thread

    async def test_exception_reaches_the_awaiting_task(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await run_sync((tmp_path / "missing.md").read_bytes)


# -------------------------------------------------------------------------
# init_semaphore / run_sync_limited
# -------------------------------------------------------------------------


class TestRequestSlots:
    async def test_unbounded_before_init(self):
        assert mod._semaphore is None

        assert await run_sync_limited(sum, [1, 2, 3]) == 6

    async def test_init_logs_limit(self, caplog):
        with caplog.at_level(logging.INFO, logger=mod.__name__):
            init_semaphore(3)

        assert mod._semaphore is not None
        assert "limited to 3" in caplog.text

    async def test_concurrent_requests_capped(self):
        init_semaphore(2)
        in_flight = 0
        peak = 0
        guard = threading.Lock()

        def _fake_request():
            nonlocal in_flight, peak
            with guard:
                in_flight += 1
                peak = max(peak, in_flight)
            time.sleep(0.05)
            with guard:
                in_flight -= 1

        await asyncio.gather(*(run_sync_limited(_fake_request) for _ in range(6)))

        assert peak == 2

    async def test_waiting_call_logged_at_debug(self, caplog):
        init_semaphore(1)
        release = threading.Event()

        def list_documents():
            release.wait(timeout=2)

        def get_document_content():
            return b"body"

        with caplog.at_level(logging.DEBUG, logger=mod.__name__):
            first = asyncio.create_task(run_sync_limited(list_documents))
            await asyncio.sleep(0.05)
            second = asyncio.create_task(run_sync_limited(get_document_content))
            await asyncio.sleep(0.05)
            release.set()
            await first
            assert await second == b"body"

        assert "get_document_content waits" in caplog.text
